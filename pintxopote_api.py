"""
Async client for the Pintxopote API.

Every call validates its arguments before touching the network, issues one
request and either returns the payload of the OK envelope or raises a
PintxopoteApiError whose message is safe to show to the user.
"""

import logging
import os
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

logger = logging.getLogger(__name__)

API_URL = os.getenv("API_URL", "http://localhost:8000")


class PintxopoteApiError(Exception):
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidInputError(PintxopoteApiError):
    """Raised before any request is made."""


class ServerError(PintxopoteApiError):
    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.status_code = status_code


class UnexpectedResponseError(PintxopoteApiError):
    pass


class UnreachableServerError(PintxopoteApiError):
    pass


def validate_string(value: Any, label: str) -> None:
    if not isinstance(value, str):
        raise InvalidInputError(f"{label} is not a string")
    if not value.strip():
        raise InvalidInputError(f"{label} is empty or blank")


def segment(value: str) -> str:
    """Quote a value for use as a single URL path segment."""
    return quote(value, safe="")


def validate_quantity(value: Any, label: str = "order quantity") -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInputError(f"{label} is not a number")
    if value < 1:
        raise InvalidInputError(f"{label} must be a positive number")


class PintxopoteApi:
    """
    Client for the Pintxopote REST API.

    Args:
        url: base URL of the API server
        transport: optional httpx transport, e.g. httpx.ASGITransport to talk
            to the app in-process
        timeout: request timeout in seconds
    """

    def __init__(self, url: str = API_URL, transport: Optional[httpx.AsyncBaseTransport] = None, timeout: float = 30.0):
        self.url = url
        self.transport = transport
        self.timeout = httpx.Timeout(timeout, connect=10.0)
        self._token: Optional[str] = None

    @property
    def token(self) -> Optional[str]:
        return self._token

    @token.setter
    def token(self, value: Optional[str]) -> None:
        self._token = value

    async def _call(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict] = None,
        params: Optional[Dict] = None,
        expected: int = 200,
        auth: bool = False,
    ) -> Any:
        headers = {}
        if auth and self._token:
            headers["Authorization"] = f"Bearer {self._token}"

        logger.debug("%s %s%s", method, self.url, path)
        try:
            async with httpx.AsyncClient(base_url=self.url, transport=self.transport, timeout=self.timeout) as client:
                response = await client.request(method, path, json=json, params=params, headers=headers)
        except httpx.ConnectError as e:
            logger.warning("Could not reach %s: %s", self.url, e)
            raise UnreachableServerError("could not reach server") from e

        try:
            body = response.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            body = {}
        envelope_status = body.get("status")

        if response.is_success:
            if response.status_code != expected or envelope_status != "OK":
                raise UnexpectedResponseError(
                    f"unexpected response status {response.status_code} ({envelope_status})"
                )
            return body.get("data")

        error = body.get("error")
        if isinstance(error, str) and error:
            raise ServerError(error, response.status_code)
        raise UnexpectedResponseError(f"unexpected response status {response.status_code} ({envelope_status})")

    # Users

    async def register_user(
        self,
        name: Optional[str] = None,
        surname: Optional[str] = None,
        email: Optional[str] = None,
        password: Optional[str] = None,
        role: Optional[str] = None,
        address: Optional[Dict[str, str]] = None,
    ) -> bool:
        validate_string(name, "user name")
        validate_string(surname, "user surname")
        validate_string(email, "user email")
        validate_string(password, "user password")

        data: Dict[str, Any] = {"name": name, "surname": surname, "email": email, "password": password}
        if role is not None:
            data["role"] = role
        if address is not None:
            data["address"] = address
        await self._call("POST", "/users", json=data, expected=201)
        return True

    async def authenticate_user(self, email: Optional[str] = None, password: Optional[str] = None) -> Dict[str, Any]:
        validate_string(email, "user email")
        validate_string(password, "user password")

        data = await self._call("POST", "/auth", json={"email": email, "password": password})
        if not isinstance(data, dict) or not all(data.get(k) for k in ("token", "id", "role")):
            raise UnexpectedResponseError("unexpected response data (missing token, id or role)")
        self._token = data["token"]
        return {"id": data["id"], "role": data["role"]}

    async def retrieve_user(self, id: Optional[str] = None) -> Dict[str, Any]:
        validate_string(id, "user id")

        return await self._call("GET", f"/users/{segment(id)}", auth=True)

    async def update_user(
        self,
        id: Optional[str] = None,
        name: Optional[str] = None,
        surname: Optional[str] = None,
        email: Optional[str] = None,
        new_email: Optional[str] = None,
        password: Optional[str] = None,
        address: Optional[Dict[str, str]] = None,
    ) -> bool:
        validate_string(id, "user id")
        validate_string(name, "user name")
        validate_string(surname, "user surname")
        validate_string(email, "user email")
        if new_email is not None:
            validate_string(new_email, "user new email")
        if password is not None:
            validate_string(password, "user password")

        data: Dict[str, Any] = {"name": name, "surname": surname, "email": email}
        if new_email is not None:
            data["newEmail"] = new_email
        if password is not None:
            data["password"] = password
        if address is not None:
            data["address"] = address
        await self._call("PUT", f"/users/{segment(id)}", json=data, auth=True)
        return True

    # Pintxopotes and pubs

    async def fetch_pintxos_by_city(self, city: Optional[str] = None) -> List[Dict[str, Any]]:
        """Today's pintxopotes in a city, best rated first."""
        validate_string(city, "city")

        return await self._call("GET", "/pintxopotes", params={"city": city})

    async def get_pintxopote_by_id(self, id: Optional[str] = None) -> Dict[str, Any]:
        validate_string(id, "pintxopote id")

        return await self._call("GET", f"/pintxopotes/{segment(id)}")

    async def get_pub_by_id(self, id: Optional[str] = None) -> Dict[str, Any]:
        validate_string(id, "pub id")

        return await self._call("GET", f"/pubs/{segment(id)}")

    async def list_pintxopotes_by_pub(self, id: Optional[str] = None) -> List[Dict[str, Any]]:
        validate_string(id, "pub id")

        return await self._call("GET", f"/pubs/{segment(id)}/pintxopotes")

    # Orders

    async def create_order(self, user: Optional[str] = None, pintxopote: Optional[str] = None, quantity: Any = None) -> Dict[str, Any]:
        validate_string(user, "order user")
        validate_string(pintxopote, "order pintxopote")
        validate_quantity(quantity)

        data = {"user": user, "pintxopote": pintxopote, "quantity": quantity}
        return await self._call("POST", "/orders", json=data, expected=201, auth=True)

    async def get_orders_by_user_id(self, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        validate_string(user_id, "user id")

        return await self._call("GET", "/orders", params={"userId": user_id}, auth=True)

    async def get_orders_by_pintxopote_id(self, pintxopote_id: Optional[str] = None) -> List[Dict[str, Any]]:
        validate_string(pintxopote_id, "pintxopote id")

        return await self._call("GET", "/orders", params={"pintxopoteId": pintxopote_id}, auth=True)

    async def validate_order(self, id: Optional[str] = None) -> bool:
        validate_string(id, "order id")

        await self._call("PUT", f"/orders/{segment(id)}/validate", auth=True)
        return True


# Process-wide client; its token slot is shared by everything that imports it.
api = PintxopoteApi()
