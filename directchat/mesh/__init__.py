"""Local link chat: peer discovery, role negotiation and line messaging.

Lets two nearby devices find each other, agree which one is the group host,
and exchange newline-terminated text over a direct TCP connection without
any internet infrastructure.
"""
