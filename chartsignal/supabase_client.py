"""
Supabase auth + table access over its REST API.

Auth calls (GoTrue) use the anon key plus, where needed, the caller's access
token. Table calls (PostgREST) use the service key: credit and payment rows
are only ever written by this backend.

Tables:
    credits(user_id uuid primary key, credits int)
    payments(id uuid, user_id, sender_address, receiver_address,
             expected_amount numeric, credits int, status text,
             created_at timestamptz, expires_at timestamptz, signature text)
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from .errors import AuthenticationError, ConfigurationError, InsufficientResource, UpstreamError

logger = logging.getLogger(__name__)

# A lost compare-and-set on the credits row is retried this many times
CREDIT_CAS_ATTEMPTS = 3


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        for key in ("msg", "error_description", "message", "error"):
            if body.get(key):
                return str(body[key])
    return response.text[:200]


class SupabaseClient:
    def __init__(
        self,
        url: Optional[str],
        anon_key: Optional[str],
        service_key: Optional[str] = None,
        *,
        timeout: float = 15.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = (url or "").rstrip("/")
        self.anon_key = anon_key
        self.service_key = service_key or anon_key
        self._http = http_client or httpx.AsyncClient(timeout=timeout)

    @property
    def configured(self) -> bool:
        return bool(self.url and self.anon_key)

    def _require_configured(self) -> None:
        if not self.configured:
            raise ConfigurationError("Auth service not configured", "Set SUPABASE_URL and SUPABASE_ANON_KEY")

    def _auth_headers(self, access_token: Optional[str] = None) -> Dict[str, str]:
        headers = {"apikey": self.anon_key or "", "Content-Type": "application/json"}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        return headers

    def _rest_headers(self, prefer: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "apikey": self.service_key or "",
            "Authorization": f"Bearer {self.service_key}",
            "Content-Type": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        self._require_configured()
        try:
            response = await self._http.request(method, f"{self.url}{path}", **kwargs)
        except httpx.HTTPError as e:
            raise UpstreamError("Auth service unavailable", str(e), status_code=502)
        logger.debug("supabase.request method=%s path=%s status=%d", method, path.split("?")[0], response.status_code)
        return response

    def _raise_for_status(self, response: httpx.Response, error: str) -> None:
        if response.is_success:
            return
        message = _error_message(response)
        logger.warning("supabase.error status=%d error=%s message=%s", response.status_code, error, message)
        if response.status_code == 401:
            raise AuthenticationError(error, message)
        raise UpstreamError(error, message, status_code=response.status_code)

    # ---------- auth ----------

    async def sign_up(self, email: str, password: str) -> Dict[str, Any]:
        response = await self._request(
            "POST",
            "/auth/v1/signup",
            headers=self._auth_headers(),
            json={"email": email, "password": password},
        )
        self._raise_for_status(response, "Signup failed")
        return response.json()

    async def sign_in(self, email: str, password: str) -> Dict[str, Any]:
        response = await self._request(
            "POST",
            "/auth/v1/token?grant_type=password",
            headers=self._auth_headers(),
            json={"email": email, "password": password},
        )
        if response.status_code in (400, 401):
            raise AuthenticationError("Invalid email or password", _error_message(response))
        self._raise_for_status(response, "Login failed")
        return response.json()

    async def sign_out(self, access_token: str) -> None:
        response = await self._request(
            "POST",
            "/auth/v1/logout",
            headers=self._auth_headers(access_token),
        )
        self._raise_for_status(response, "Logout failed")

    async def get_user(self, access_token: str) -> Dict[str, Any]:
        response = await self._request(
            "GET",
            "/auth/v1/user",
            headers=self._auth_headers(access_token),
        )
        if response.status_code in (401, 403):
            raise AuthenticationError("Invalid or expired session")
        self._raise_for_status(response, "Failed to load user")
        return response.json()

    # ---------- credits ----------

    async def _fetch_credits(self, user_id: str) -> Optional[int]:
        response = await self._request(
            "GET",
            "/rest/v1/credits",
            headers=self._rest_headers(),
            params={"user_id": f"eq.{user_id}", "select": "credits"},
        )
        self._raise_for_status(response, "Failed to load credits")
        rows = response.json()
        if not rows:
            return None
        return int(rows[0].get("credits") or 0)

    async def get_credits(self, user_id: str) -> int:
        return await self._fetch_credits(user_id) or 0

    async def create_credits(self, user_id: str, credits: int) -> None:
        response = await self._request(
            "POST",
            "/rest/v1/credits",
            headers=self._rest_headers("resolution=ignore-duplicates,return=minimal"),
            json={"user_id": user_id, "credits": credits},
        )
        self._raise_for_status(response, "Failed to create credits")

    async def _compare_and_set_credits(self, user_id: str, seen: int, new: int) -> bool:
        response = await self._request(
            "PATCH",
            "/rest/v1/credits",
            headers=self._rest_headers("return=representation"),
            params={"user_id": f"eq.{user_id}", "credits": f"eq.{seen}"},
            json={"credits": new},
        )
        self._raise_for_status(response, "Failed to update credits")
        return bool(response.json())

    async def consume_credit(self, user_id: str) -> int:
        """Take exactly one credit; returns the remaining balance."""
        for _ in range(CREDIT_CAS_ATTEMPTS):
            current = await self.get_credits(user_id)
            if current < 1:
                raise InsufficientResource("Insufficient credits", "Buy more credits to continue")
            if await self._compare_and_set_credits(user_id, current, current - 1):
                return current - 1
            logger.info("credits.cas_conflict user_id=%s seen=%d", user_id, current)
        raise UpstreamError("Failed to update credits", "Concurrent credit update, try again", status_code=409)

    async def add_credits(self, user_id: str, amount: int) -> int:
        for _ in range(CREDIT_CAS_ATTEMPTS):
            current = await self._fetch_credits(user_id)
            if current is None:
                await self.create_credits(user_id, amount)
                return amount
            if await self._compare_and_set_credits(user_id, current, current + amount):
                return current + amount
            logger.info("credits.cas_conflict user_id=%s seen=%d", user_id, current)
        raise UpstreamError("Failed to update credits", "Concurrent credit update, try again", status_code=409)

    # ---------- payments ----------

    async def insert_payment(self, row: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._request(
            "POST",
            "/rest/v1/payments",
            headers=self._rest_headers("return=representation"),
            json=row,
        )
        self._raise_for_status(response, "Failed to create payment")
        rows: List[Dict[str, Any]] = response.json()
        return rows[0] if rows else row

    async def get_payment(self, payment_id: str) -> Optional[Dict[str, Any]]:
        response = await self._request(
            "GET",
            "/rest/v1/payments",
            headers=self._rest_headers(),
            params={"id": f"eq.{payment_id}", "select": "*"},
        )
        self._raise_for_status(response, "Failed to load payment")
        rows = response.json()
        return rows[0] if rows else None

    async def update_payment_status(
        self,
        payment_id: str,
        status: str,
        signature: Optional[str] = None,
        *,
        expected_status: str = "pending",
    ) -> bool:
        """Move a payment from `expected_status` to `status`. False if it had already moved."""
        body: Dict[str, Any] = {"status": status}
        if signature:
            body["signature"] = signature
        response = await self._request(
            "PATCH",
            "/rest/v1/payments",
            headers=self._rest_headers("return=representation"),
            params={"id": f"eq.{payment_id}", "status": f"eq.{expected_status}"},
            json=body,
        )
        self._raise_for_status(response, "Failed to update payment")
        return bool(response.json())

    async def aclose(self) -> None:
        await self._http.aclose()
