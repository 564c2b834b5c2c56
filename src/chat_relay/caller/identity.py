"""OTP identity provider used by the login tools.

The provider is an external collaborator: ``IdentityProvider`` is the narrow
interface the frontend tools need, and ``InMemoryIdentityProvider`` is a
process-local implementation for development and tests.
"""

import logging
import secrets
import uuid
from dataclasses import dataclass, field
from typing import Callable, Literal, Protocol

logger = logging.getLogger(__name__)

AuthFlow = Literal["SIGN_IN", "SIGN_UP"]


class IdentityProviderError(Exception):
    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


@dataclass
class VerificationAttempt:
    status: str  # "complete", "needs_second_factor", "missing_requirements", ...
    session_id: str | None = None


class IdentityProvider(Protocol):
    async def start_sign_in(self, email: str) -> None: ...

    async def start_sign_up(self, email: str) -> None: ...

    async def resend_code(self, flow: AuthFlow, email: str) -> None: ...

    async def attempt(self, flow: AuthFlow, email: str, code: str) -> VerificationAttempt: ...

    async def set_active(self, session_id: str) -> str: ...


def _random_code() -> str:
    return f"{secrets.randbelow(1_000_000):06d}"


@dataclass
class InMemoryIdentityProvider:
    """Accounts, pending codes and sessions held in memory.

    ``outbox`` records every (email, code) pair "sent", newest last.
    """

    users: dict[str, str] = field(default_factory=dict)
    code_factory: Callable[[], str] = _random_code
    outbox: list[tuple[str, str]] = field(default_factory=list)
    email_code_enabled: bool = True
    _pending: dict[tuple[str, str], str] = field(default_factory=dict)
    _sessions: dict[str, str] = field(default_factory=dict)

    def _send(self, flow: AuthFlow, email: str) -> None:
        code = self.code_factory()
        self._pending[(flow, email)] = code
        self.outbox.append((email, code))
        logger.debug("Sent %s code to %s", flow, email)

    def last_code(self, email: str) -> str | None:
        for sent_to, code in reversed(self.outbox):
            if sent_to == email:
                return code
        return None

    async def start_sign_in(self, email: str) -> None:
        if email not in self.users:
            raise IdentityProviderError(f"Couldn't find your account: {email}", "ACCOUNT_NOT_FOUND")
        if not self.email_code_enabled:
            raise IdentityProviderError("Email OTP is not available for sign-in.", "NO_EMAIL_CODE")
        self._send("SIGN_IN", email)

    async def start_sign_up(self, email: str) -> None:
        if email in self.users:
            raise IdentityProviderError("That email address is taken.", "ACCOUNT_EXISTS")
        self._send("SIGN_UP", email)

    async def resend_code(self, flow: AuthFlow, email: str) -> None:
        if (flow, email) not in self._pending:
            raise IdentityProviderError("No code was requested for this email.")
        self._send(flow, email)

    async def attempt(self, flow: AuthFlow, email: str, code: str) -> VerificationAttempt:
        expected = self._pending.get((flow, email))
        if expected is None or code != expected:
            raise IdentityProviderError("Incorrect code", "FORM_CODE_INCORRECT")
        del self._pending[(flow, email)]
        if flow == "SIGN_UP":
            self.users[email] = f"user_{uuid.uuid4().hex[:12]}"
        session_id = f"sess_{uuid.uuid4().hex}"
        self._sessions[session_id] = self.users[email]
        return VerificationAttempt(status="complete", session_id=session_id)

    async def set_active(self, session_id: str) -> str:
        user_id = self._sessions.get(session_id)
        if user_id is None:
            raise IdentityProviderError("Unknown session")
        return user_id
