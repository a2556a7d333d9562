"""
Thin async client for the Hetzner Cloud REST API.

Only the calls the build orchestration needs are implemented. Every mutating
endpoint returns an action; callers get control back once the action finished.
"""

from __future__ import annotations

import asyncio
import typing as t
from dataclasses import dataclass, field
from pathlib import Path

import httpx

from .errors import ProviderError

API_BASE_URL = "https://api.hetzner.cloud/v1"
ACTION_POLL_INTERVAL = 2.0
PAGE_SIZE = 50


@dataclass(slots=True, frozen=True)
class InstanceInfo:
    id: int
    name: str
    address: str | None
    status: str | None = None


@dataclass(slots=True, frozen=True)
class ImageInfo:
    id: int
    description: str
    labels: dict[str, str] = field(default_factory=dict)
    created: str | None = None
    image_size: float | None = None
    type: str | None = None


def _instance_from_payload(payload: dict[str, t.Any]) -> InstanceInfo:
    ipv4 = ((payload.get("public_net") or {}).get("ipv4") or {}).get("ip")
    return InstanceInfo(
        id=int(payload["id"]),
        name=str(payload.get("name", "")),
        address=ipv4 or None,
        status=payload.get("status"),
    )


def _image_from_payload(payload: dict[str, t.Any]) -> ImageInfo:
    return ImageInfo(
        id=int(payload["id"]),
        description=str(payload.get("description") or ""),
        labels=dict(payload.get("labels") or {}),
        created=payload.get("created"),
        image_size=payload.get("image_size"),
        type=payload.get("type"),
    )


class HetznerGateway:
    def __init__(
        self,
        token: str,
        *,
        base_url: str = API_BASE_URL,
        transport: httpx.AsyncBaseTransport | None = None,
        poll_interval: float = ACTION_POLL_INTERVAL,
        timeout: float = 30.0,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/json",
            },
            timeout=httpx.Timeout(timeout, connect=10.0),
            transport=transport,
        )
        self._poll_interval = poll_interval

    async def __aenter__(self) -> "HetznerGateway":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    # -------------------- HTTP helpers -------------------- #

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, t.Any] | None = None,
        payload: dict[str, t.Any] | None = None,
    ) -> dict[str, t.Any]:
        try:
            response = await self._client.request(method, path, params=params, json=payload)
        except httpx.HTTPError as exc:
            raise ProviderError(f"Hetzner API {method} {path} failed: {exc}") from exc
        if response.is_error:
            code: str | None = None
            message = response.text
            try:
                error = response.json().get("error") or {}
                code = error.get("code")
                message = error.get("message") or message
            except ValueError:
                pass
            raise ProviderError(
                f"Hetzner API {method} {path} failed ({response.status_code}): {message}",
                status_code=response.status_code,
                code=code,
            )
        if response.status_code == httpx.codes.NO_CONTENT or not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderError(
                f"Unexpected non-JSON response from Hetzner API: {response.text!r}"
            ) from exc

    async def wait_for_action(self, action: dict[str, t.Any] | None) -> None:
        if not action:
            return
        while True:
            status = action.get("status")
            if status == "success":
                return
            if status == "error":
                error = action.get("error") or {}
                raise ProviderError(
                    f"Action {action.get('command', action.get('id'))} failed: "
                    f"{error.get('message', 'unknown error')}",
                    code=error.get("code"),
                )
            await asyncio.sleep(self._poll_interval)
            body = await self._request("GET", f"/actions/{action['id']}")
            action = body["action"]

    # -------------------- SSH keys -------------------- #

    async def ensure_ssh_key(self, name: str, public_key_path: Path) -> bool:
        """Register the key under ``name`` unless it exists. Returns True if created."""
        body = await self._request("GET", "/ssh_keys", params={"name": name})
        if body.get("ssh_keys"):
            return False
        public_key = public_key_path.expanduser().read_text().strip()
        await self._request("POST", "/ssh_keys", payload={"name": name, "public_key": public_key})
        return True

    # -------------------- servers -------------------- #

    async def create_instance(
        self,
        *,
        name: str,
        server_type: str,
        image: str,
        location: str,
        ssh_key: str,
        on_created: t.Callable[[int], None] | None = None,
    ) -> int:
        """Create a server and wait for it to start.

        ``on_created`` is called with the new id before the create actions are
        awaited, so the server can be cleaned up if that wait is interrupted.
        """
        body = await self._request(
            "POST",
            "/servers",
            payload={
                "name": name,
                "server_type": server_type,
                "image": image,
                "location": location,
                "ssh_keys": [ssh_key],
                "start_after_create": True,
            },
        )
        server_id = int(body["server"]["id"])
        if on_created is not None:
            on_created(server_id)
        await self.wait_for_action(body.get("action"))
        for action in body.get("next_actions") or []:
            await self.wait_for_action(action)
        return server_id

    async def describe_instance(self, name: str) -> InstanceInfo | None:
        body = await self._request("GET", "/servers", params={"name": name})
        servers = body.get("servers") or []
        if not servers:
            return None
        return _instance_from_payload(servers[0])

    async def delete_instance(self, server_id: int) -> None:
        body = await self._request("DELETE", f"/servers/{server_id}")
        await self.wait_for_action(body.get("action"))

    async def power_off(self, server_id: int) -> None:
        body = await self._request("POST", f"/servers/{server_id}/actions/poweroff")
        await self.wait_for_action(body.get("action"))

    async def power_on(self, server_id: int) -> None:
        body = await self._request("POST", f"/servers/{server_id}/actions/poweron")
        await self.wait_for_action(body.get("action"))

    # -------------------- images -------------------- #

    async def create_image(
        self,
        server_id: int,
        *,
        description: str,
        labels: dict[str, str] | None = None,
    ) -> int | None:
        body = await self._request(
            "POST",
            f"/servers/{server_id}/actions/create_image",
            payload={
                "type": "snapshot",
                "description": description,
                "labels": labels or {},
            },
        )
        await self.wait_for_action(body.get("action"))
        image = body.get("image") or {}
        return int(image["id"]) if image.get("id") is not None else None

    async def list_images(self, *, label_selector: str | None = None) -> list[ImageInfo]:
        images: list[ImageInfo] = []
        page: int | None = 1
        while page is not None:
            params: dict[str, t.Any] = {"type": "snapshot", "page": page, "per_page": PAGE_SIZE}
            if label_selector:
                params["label_selector"] = label_selector
            body = await self._request("GET", "/images", params=params)
            images.extend(_image_from_payload(item) for item in body.get("images") or [])
            pagination = (body.get("meta") or {}).get("pagination") or {}
            page = pagination.get("next_page")
        return images

    async def describe_image(self, image_id: int) -> ImageInfo:
        body = await self._request("GET", f"/images/{image_id}")
        return _image_from_payload(body["image"])

    async def update_image(
        self,
        image_id: int,
        *,
        description: str | None = None,
        labels: dict[str, str] | None = None,
    ) -> ImageInfo:
        payload: dict[str, t.Any] = {}
        if description is not None:
            payload["description"] = description
        if labels is not None:
            payload["labels"] = labels
        body = await self._request("PUT", f"/images/{image_id}", payload=payload)
        return _image_from_payload(body["image"])

    async def delete_image(self, image_id: int) -> None:
        await self._request("DELETE", f"/images/{image_id}")
