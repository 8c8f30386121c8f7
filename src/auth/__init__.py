"""
Account authentication: the login/refresh state machine, authenticator
enrollment, phone helpers and QR login approval.
"""

from .session import ChallengeKind, LoginState, SessionManager

__all__ = ["ChallengeKind", "LoginState", "SessionManager"]
