"""Actions the agent can request but only the caller can perform.

Login state (which flow is active, for which email, whether a code went out)
lives here, in the caller's process. It is never part of the conversation.
"""

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable

import pydantic
from pydantic import BaseModel, ConfigDict, field_validator

from ..agent.structured import DECLARED_TOOL_NAMES
from ..agent.tools import is_valid_email_format
from ..errors import NoActiveFlow, RelayError, ToolExecutionFailed, ToolNotFound, ValidationError
from .identity import AuthFlow, IdentityProvider, IdentityProviderError

logger = logging.getLogger(__name__)


class _ToolArgs(BaseModel):
    model_config = ConfigDict(extra="ignore")


class LoginStartArgs(_ToolArgs):
    email: str

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, v: str) -> str:
        v = v.strip().lower()
        if not is_valid_email_format(v):
            raise ValueError("not a valid email address")
        return v


class LoginVerifyArgs(_ToolArgs):
    code: str

    @field_validator("code")
    @classmethod
    def _normalize_code(cls, v: str) -> str:
        v = v.strip()
        if len(v) < 4:
            raise ValueError("code must be at least 4 characters")
        return v


class NoArgs(_ToolArgs):
    pass


@dataclass
class FrontendTool:
    name: str
    description: str
    args_model: type[BaseModel]
    handler: Callable[[Any], Awaitable[dict]]
    declared: bool = True

    def validate(self, raw_args: dict | None) -> BaseModel:
        try:
            return self.args_model.model_validate(raw_args or {})
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid arguments for {self.name}: {e}") from e

    async def execute(self, args: BaseModel) -> dict:
        return await self.handler(args)


class FrontendToolRegistry:
    """Named, schema-validated caller-side actions."""

    def __init__(self, tools: Iterable[FrontendTool]) -> None:
        self._tools = {t.name: t for t in tools}

    def __len__(self) -> int:
        return len(self._tools)

    def names(self) -> list[str]:
        return list(self._tools)

    def declared_names(self) -> list[str]:
        return [name for name, t in self._tools.items() if t.declared]

    def get(self, name: str) -> FrontendTool:
        tool = self._tools.get(name)
        if tool is None:
            raise ToolNotFound(name, self.names())
        return tool

    async def execute(self, name: str, raw_args: dict | None = None) -> dict:
        tool = self.get(name)
        args = tool.validate(raw_args)
        logger.info("Executing frontend tool %s", name)
        try:
            return await tool.execute(args)
        except RelayError:
            raise
        except Exception as e:
            raise ToolExecutionFailed(f"{name} failed: {e}") from e


def _err(error: str, code: str) -> dict:
    return {"ok": False, "error": error, "code": code}


@dataclass
class AuthState:
    step: str = "IDLE"  # "IDLE", "CODE_SENT", "DONE"
    flow: AuthFlow | None = None
    email: str | None = None


class LoginTools:
    """The OTP login actions, backed by an identity provider."""

    def __init__(
        self,
        provider: IdentityProvider,
        on_authenticated: Callable[[str], None] | None = None,
    ) -> None:
        self._provider = provider
        self._on_authenticated = on_authenticated
        self.state = AuthState()

    def require_active_flow(self) -> AuthState:
        state = self.state
        if state.step != "CODE_SENT" or not state.flow or not state.email:
            raise NoActiveFlow("Login not started. Ask for email first.")
        return state

    async def start(self, args: LoginStartArgs) -> dict:
        email = args.email
        try:
            await self._provider.start_sign_in(email)
        except IdentityProviderError as e:
            if e.code == "NO_EMAIL_CODE":
                return _err(str(e), "NO_EMAIL_CODE")
            # No account for this email: fall back to sign-up.
            try:
                await self._provider.start_sign_up(email)
            except IdentityProviderError as e2:
                return _err(str(e2), "SIGNUP_FAILED")
            self.state = AuthState(step="CODE_SENT", flow="SIGN_UP", email=email)
            return {"ok": True, "next": "ASK_CODE", "flow": "SIGN_UP"}

        self.state = AuthState(step="CODE_SENT", flow="SIGN_IN", email=email)
        return {"ok": True, "next": "ASK_CODE", "flow": "SIGN_IN"}

    async def verify(self, args: LoginVerifyArgs) -> dict:
        try:
            state = self.require_active_flow()
        except NoActiveFlow as e:
            return _err(e.message, e.code)

        try:
            attempt = await self._provider.attempt(state.flow, state.email, args.code)
            if attempt.status == "complete" and attempt.session_id:
                user_id = await self._provider.set_active(attempt.session_id)
        except IdentityProviderError as e:
            return _err(str(e), "VERIFY_FAILED")

        if attempt.status == "complete" and attempt.session_id:
            self.state = AuthState(step="DONE", flow=state.flow, email=state.email)
            if self._on_authenticated:
                self._on_authenticated(user_id)
            return {"ok": True, "authenticated": True}

        if state.flow == "SIGN_IN":
            code = "NEEDS_2FA" if attempt.status == "needs_second_factor" else "SIGNIN_NOT_COMPLETE"
            return _err(f"Sign-in not complete (status: {attempt.status}).", code)
        code = (
            "MISSING_REQUIREMENTS"
            if attempt.status == "missing_requirements"
            else "SIGNUP_NOT_COMPLETE"
        )
        return _err(f"Sign-up not complete (status: {attempt.status}).", code)

    async def resend(self, args: NoArgs) -> dict:
        try:
            state = self.require_active_flow()
        except NoActiveFlow:
            return _err("No active login flow to resend for.", NoActiveFlow.code)
        try:
            await self._provider.resend_code(state.flow, state.email)
        except IdentityProviderError as e:
            return _err(str(e), "RESEND_FAILED")
        return {"ok": True, "resent": True}

    async def status(self, args: NoArgs) -> dict:
        return {"ok": True, "step": self.state.step, "flow": self.state.flow, "email": self.state.email}

    def tools(self) -> list[FrontendTool]:
        return [
            FrontendTool(
                "login_user_start",
                "Start OTP login: try sign-in first, fall back to sign-up. Sends a code to the email.",
                LoginStartArgs,
                self.start,
            ),
            FrontendTool(
                "login_user_verify",
                "Verify the OTP code and activate the session if it matches.",
                LoginVerifyArgs,
                self.verify,
            ),
            FrontendTool(
                "login_user_resend",
                "Resend the OTP for the current login flow.",
                NoArgs,
                self.resend,
            ),
            FrontendTool(
                "login_user_status",
                "Current login flow state, for debugging.",
                NoArgs,
                self.status,
                declared=False,
            ),
        ]


def build_frontend_registry(
    provider: IdentityProvider,
    on_authenticated: Callable[[str], None] | None = None,
) -> tuple[FrontendToolRegistry, LoginTools]:
    login = LoginTools(provider, on_authenticated)
    registry = FrontendToolRegistry(login.tools())
    missing = set(DECLARED_TOOL_NAMES) - set(registry.declared_names())
    if missing:
        raise RuntimeError(f"Declared tools without a handler: {', '.join(sorted(missing))}")
    return registry, login
