"""Configuration module for directchat."""

from directchat.config.schema import ChatConfig, Config, LinkLayerConfig

__all__ = ["ChatConfig", "Config", "LinkLayerConfig"]
