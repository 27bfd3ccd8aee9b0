"""
Services module for the bot portal.
Provides the delivery pipeline and its collaborators.
"""

from .auth_service import (
    AuthService,
    CallerIdentity,
    auth_service,
    get_current_identity
)
from .access_policy import AccessPolicy, AllowAllPolicy, StoreAccessPolicy
from .background import BackgroundRunner
from .dispatcher import (
    Ack,
    AgentJob,
    RequestDispatcher,
    generate_request_id,
    parse_submitted_at
)
from .agent_bridge import AgentBridge, ParsedReply, parse_agent_reply
from .session_resolver import SessionResolver
from .status_query import StatusQuery
from .container import PortalServices, build_services

__all__ = [
    # Auth
    'AuthService',
    'CallerIdentity',
    'auth_service',
    'get_current_identity',

    # Authorization
    'AccessPolicy',
    'AllowAllPolicy',
    'StoreAccessPolicy',

    # Delivery
    'BackgroundRunner',
    'Ack',
    'AgentJob',
    'RequestDispatcher',
    'generate_request_id',
    'parse_submitted_at',
    'AgentBridge',
    'ParsedReply',
    'parse_agent_reply',
    'SessionResolver',
    'StatusQuery',

    # Wiring
    'PortalServices',
    'build_services',
]
