from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional
from urllib.parse import urlsplit

import requests

from bounded_retry import ConsistencyTimeoutError, wait_for
from ticket_store import StoreError, TicketStore

logger = logging.getLogger(__name__)

PROFILES_TABLE = "profiles"
STAFF_ROLE = "Staff"
STAFF_ROLES = {"Staff", "Admin"}
MIN_PASSWORD_LENGTH = 6
BOOTSTRAP_ATTEMPTS = 6
BOOTSTRAP_DELAY = 0.25


class AuthError(RuntimeError):
    """Raised when the auth service rejects a request or cannot be reached."""


@dataclass
class AuthResult:
    user: dict[str, Any]
    session: Optional[dict[str, Any]] = None

    @property
    def user_id(self) -> Optional[str]:
        return self.user.get("id")


def _auth_error_message(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        for key in ("msg", "error_description", "message", "error"):
            if body.get(key):
                return str(body[key])
    return f"Authentication service returned {response.status_code}."


class SupabaseAuthClient:
    """Email/password accounts through a Supabase (GoTrue) ``/auth/v1`` endpoint."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 10,
        http: requests.Session | None = None,
    ):
        self.configured = bool(base_url and api_key)
        self.auth_url = f"{base_url.rstrip('/')}/auth/v1"
        self.api_key = api_key
        self.timeout = timeout
        self.http = http or requests.Session()

    def _post(self, path: str, payload: dict, params: dict | None = None) -> dict:
        if not self.configured:
            raise AuthError("Authentication is not configured. Set SUPABASE_URL and SUPABASE_ANON_KEY.")
        headers = {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        try:
            response = self.http.post(
                f"{self.auth_url}/{path}",
                params=params,
                json=payload,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.warning("Auth %s request failed: %s", path, exc)
            raise AuthError("Authentication service is unavailable.") from exc
        if response.status_code >= 400:
            raise AuthError(_auth_error_message(response))
        try:
            data = response.json()
        except ValueError as exc:
            raise AuthError("Authentication response was not valid JSON.") from exc
        if not isinstance(data, dict):
            raise AuthError("Authentication response was not an object.")
        return data

    @staticmethod
    def _result(data: dict) -> AuthResult:
        # With auto-confirm the body is a session wrapping the user; otherwise it is the user.
        if data.get("access_token"):
            session = {
                "access_token": data["access_token"],
                "refresh_token": data.get("refresh_token"),
                "expires_in": data.get("expires_in"),
            }
            return AuthResult(user=data.get("user") or {}, session=session)
        user = data.get("user") if isinstance(data.get("user"), dict) else data
        return AuthResult(user=user)

    def sign_up(self, email: str, password: str, metadata: dict | None = None) -> AuthResult:
        data = self._post(
            "signup",
            {"email": email, "password": password, "data": metadata or {}},
        )
        return self._result(data)

    def sign_in_with_password(self, email: str, password: str) -> AuthResult:
        data = self._post(
            "token",
            {"email": email, "password": password},
            params={"grant_type": "password"},
        )
        result = self._result(data)
        if result.session is None:
            raise AuthError("Sign-in did not return a session.")
        return result


def safe_next_path(value: Any) -> str:
    """Keep only same-origin relative paths; everything else goes home."""
    if not isinstance(value, str):
        return "/"
    candidate = value.strip()
    # Browsers drop tabs and newlines, so "/\t/host" would become "//host".
    if any(ord(char) < 32 or ord(char) == 127 for char in candidate):
        return "/"
    if not candidate.startswith("/") or candidate.startswith("//") or candidate.startswith("/\\"):
        return "/"
    parts = urlsplit(candidate)
    if parts.scheme or parts.netloc:
        return "/"
    return candidate


def promote_to_staff(store: TicketStore, user_id: str) -> list[dict]:
    return store.update(
        PROFILES_TABLE,
        {"role": STAFF_ROLE, "is_active": True},
        {"id": user_id},
    )


def bootstrap_staff_profile(
    store: TicketStore,
    user_id: str,
    attempts: int = BOOTSTRAP_ATTEMPTS,
    delay: float = BOOTSTRAP_DELAY,
    sleep: Callable[[float], None] | None = None,
) -> dict:
    """Promote a new account once its profile row exists.

    The row is written by a trigger on sign-up, so an update can match
    nothing for a short while.
    """
    rows = wait_for(
        lambda: promote_to_staff(store, user_id),
        attempts=attempts,
        delay=delay,
        description=f"profile {user_id}",
        sleep=sleep,
    )
    logger.info("Promoted %s to %s", user_id, STAFF_ROLE)
    return rows[0]


def fetch_profile_role(store: TicketStore, user_id: str) -> Optional[str]:
    rows = store.select(PROFILES_TABLE, {"id": user_id}, limit=1)
    if not rows:
        return None
    return rows[0].get("role")


# Registration outcomes
INVALID = "invalid"
AUTH_FAILED = "auth_failed"
BOOTSTRAP_INCOMPLETE = "bootstrap_incomplete"
SIGNED_IN = "signed_in"
CONFIRM_REQUIRED = "confirm_required"


@dataclass
class RegistrationForm:
    email: str
    password: str
    confirm_password: str
    first_name: str = ""
    last_name: str = ""
    next_path: str = "/"

    @classmethod
    def from_form(cls, form: Mapping[str, Any]) -> "RegistrationForm":
        def text(*names: str) -> str:
            for name in names:
                value = form.get(name)
                if value:
                    return str(value)
            return ""

        return cls(
            email=text("email").strip(),
            password=text("password"),
            confirm_password=text("confirmPassword", "confirm_password"),
            first_name=text("firstName", "first_name").strip(),
            last_name=text("lastName", "last_name").strip(),
            next_path=safe_next_path(form.get("next")),
        )

    def validation_error(self) -> Optional[str]:
        if not self.email or not self.password:
            return "Email and password are required."
        if len(self.password) < MIN_PASSWORD_LENGTH:
            return f"Password must be at least {MIN_PASSWORD_LENGTH} characters."
        if self.password != self.confirm_password:
            return "Passwords do not match."
        return None


@dataclass
class RegistrationOutcome:
    status: str
    message: str
    next_path: str = "/"
    email: str = ""
    staff: bool = False
    user: dict = field(default_factory=dict)


def register_account(
    form: RegistrationForm,
    auth_client,
    store: TicketStore | None = None,
    bootstrap_staff: bool = False,
    sleep: Callable[[float], None] | None = None,
) -> RegistrationOutcome:
    problem = form.validation_error()
    if problem:
        return RegistrationOutcome(INVALID, problem, next_path=form.next_path, email=form.email)

    metadata = {"first_name": form.first_name, "last_name": form.last_name}
    try:
        result = auth_client.sign_up(form.email, form.password, metadata)
    except AuthError as exc:
        logger.warning("Sign-up rejected for %s: %s", form.email, exc)
        return RegistrationOutcome(AUTH_FAILED, str(exc), next_path=form.next_path, email=form.email)

    logger.info("Account created for %s", form.email)

    staff = False
    if bootstrap_staff:
        try:
            if store is None or not result.user_id:
                raise StoreError("No profile store or user id available.")
            bootstrap_staff_profile(store, result.user_id, sleep=sleep)
            staff = True
        except (ConsistencyTimeoutError, StoreError) as exc:
            logger.warning("Staff bootstrap for %s did not complete: %s", form.email, exc)
            return RegistrationOutcome(
                BOOTSTRAP_INCOMPLETE,
                "Account created, but staff bootstrap did not complete.",
                next_path=form.next_path,
                email=form.email,
                user=result.user,
            )

    if result.session:
        return RegistrationOutcome(
            SIGNED_IN,
            "Staff account created." if staff else "Account created.",
            next_path=form.next_path,
            email=form.email,
            staff=staff,
            user=result.user,
        )
    return RegistrationOutcome(
        CONFIRM_REQUIRED,
        "Account created. Please sign in.",
        next_path=form.next_path,
        email=form.email,
        staff=staff,
        user=result.user,
    )


@dataclass
class LoginOutcome:
    ok: bool
    message: str
    next_path: str = "/"
    user: dict = field(default_factory=dict)


def sign_in(form: Mapping[str, Any], auth_client, store: TicketStore | None = None) -> LoginOutcome:
    email = str(form.get("email") or "").strip()
    password = str(form.get("password") or "")
    next_path = safe_next_path(form.get("next"))
    if not email or not password:
        return LoginOutcome(False, "Email and password are required.", next_path)

    try:
        result = auth_client.sign_in_with_password(email, password)
    except AuthError as exc:
        logger.info("Sign-in failed for %s: %s", email, exc)
        return LoginOutcome(False, str(exc), next_path)

    role = None
    if store is not None and result.user_id:
        try:
            role = fetch_profile_role(store, result.user_id)
        except StoreError as exc:
            logger.warning("Could not load profile for %s: %s", email, exc)

    user = {
        "id": result.user_id,
        "email": result.user.get("email") or email,
        "name": display_name(result.user),
        "role": role,
    }
    return LoginOutcome(True, f"Signed in as {user['email']}", next_path, user)


def display_name(user: Mapping[str, Any]) -> Optional[str]:
    metadata = user.get("user_metadata") or {}
    name = " ".join(
        part for part in (metadata.get("first_name"), metadata.get("last_name")) if part
    )
    return name or None


def session_user(outcome: RegistrationOutcome) -> dict:
    return {
        "id": outcome.user.get("id"),
        "email": outcome.user.get("email") or outcome.email,
        "name": display_name(outcome.user),
        "role": STAFF_ROLE if outcome.staff else None,
    }
