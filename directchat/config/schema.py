"""Configuration schema using Pydantic."""

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings


class Base(BaseModel):
    """Base model that accepts both camelCase and snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ChatConfig(Base):
    """Direct chat session and socket configuration."""

    host: str = "0.0.0.0"               # Interface the messaging endpoint binds on
    port: int = 8988                    # Well-known TCP port shared by both sides
    connect_timeout: float = 5.0        # Seconds allowed for an outbound connect
    negotiation_timeout: float = 30.0   # Seconds between connect request and role assignment
    max_connections: int = Field(default=64, ge=1)  # Soft cap on live inbound connections


class LinkLayerConfig(Base):
    """UDP beacon link layer configuration."""

    node_id: str = ""                   # Link-layer address (auto-generated from hostname if empty)
    display_name: str = ""              # Name shown to other devices (defaults to node_id)
    udp_port: int = 8989                # UDP port for beacons and invites
    broadcast_interval: float = 2.0     # Seconds between beacons
    peer_timeout: float = 10.0          # Seconds before a silent peer drops off the list


class Config(BaseSettings):
    """Root configuration for directchat."""

    chat: ChatConfig = Field(default_factory=ChatConfig)
    link: LinkLayerConfig = Field(default_factory=LinkLayerConfig)

    model_config = ConfigDict(env_prefix="DIRECTCHAT_", env_nested_delimiter="__")
