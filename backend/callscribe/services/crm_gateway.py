# backend/callscribe/services/crm_gateway.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from callscribe.config import settings
from callscribe.services.client_settings_service import TenantCredentials
from callscribe.utils.logger import logger
from callscribe.utils.normalize import is_call_message, unwrap_message, unwrap_messages


class CRMError(Exception):
    def __init__(self, message: str, status_code: int = 502, details: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.details = details


class CRMNotFoundError(CRMError):
    pass


class CRMUnauthorizedError(CRMError):
    pass


class CRMUpstreamError(CRMError):
    pass


def resolve_audio_url(message: Dict[str, Any]) -> Optional[str]:
    """
    Find a playable recording URL on a call message.

    Order: attachments[0].url, attachments[0] as a string, meta.recording_url,
    meta.call.recording_url. None means no recording is exposed yet (disabled,
    still processing, or the call was too short); that is not an error.
    """
    message = unwrap_message(message)

    attachments = message.get("attachments")
    first = attachments[0] if isinstance(attachments, list) and attachments else None
    if isinstance(first, dict) and isinstance(first.get("url"), str) and first["url"].strip():
        return first["url"].strip()
    if isinstance(first, str) and first.strip():
        return first.strip()

    meta = message.get("meta")
    if isinstance(meta, dict):
        url = meta.get("recording_url")
        if isinstance(url, str) and url.strip():
            return url.strip()
        call_meta = meta.get("call")
        if isinstance(call_meta, dict):
            url = call_meta.get("recording_url")
            if isinstance(url, str) and url.strip():
                return url.strip()

    return None


def _parse_date(value: Any) -> datetime:
    if not value:
        return datetime.min
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).replace(tzinfo=None)
    except ValueError:
        return datetime.min


class CRMGateway:
    """HighLevel (LeadConnector) API client bound to one tenant's credentials."""

    def __init__(
        self,
        credentials: TenantCredentials,
        *,
        base_url: str,
        api_version: str,
        timeout: float = 25.0,
        http: Optional[httpx.AsyncClient] = None,
    ):
        self.credentials = credentials
        self.base_url = base_url.rstrip("/")
        self.api_version = api_version
        self._http = http or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def for_tenant(cls, credentials: TenantCredentials, http: Optional[httpx.AsyncClient] = None) -> "CRMGateway":
        return cls(
            credentials,
            base_url=settings.GHL_API_BASE_URL,
            api_version=settings.GHL_API_VERSION,
            timeout=settings.GHL_TIMEOUT_SECONDS,
            http=http,
        )

    def _headers(self, accept_json: bool = True) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.credentials.access_token}",
            "Version": self.api_version,
        }
        if accept_json:
            headers["Accept"] = "application/json"
        return headers

    async def _request(self, method: str, path: str, *, operation: str, **kwargs) -> httpx.Response:
        url = f"{self.base_url}{path}"
        try:
            resp = await self._http.request(method, url, headers=self._headers(), **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"[crm] {operation} transport error: {type(e).__name__}: {e}")
            raise CRMUpstreamError(f"HighLevel request failed during {operation}", 502, str(e)) from e

        if resp.status_code in (401, 403):
            logger.error(f"[crm] {operation} unauthorized ({resp.status_code})")
            raise CRMUnauthorizedError(
                "HighLevel rejected the access token", resp.status_code, resp.text[:1000]
            )
        if resp.status_code == 404:
            raise CRMNotFoundError(f"HighLevel returned 404 for {operation}", 404, resp.text[:1000])
        if resp.status_code >= 400:
            logger.error(f"[crm] {operation} error {resp.status_code}: {resp.text[:500]}")
            raise CRMUpstreamError(
                f"HighLevel API error: {resp.status_code}", resp.status_code, resp.text[:1000]
            )
        return resp

    # -------------------------
    # Messages / recordings
    # -------------------------

    async def fetch_message(self, message_id: str) -> Dict[str, Any]:
        resp = await self._request("GET", f"/conversations/messages/{message_id}", operation="fetch_message")
        return unwrap_message(resp.json())

    async def fetch_recording_bytes(self, message_id: str, location_id: Optional[str] = None) -> bytes:
        """Direct binary download, used when the message exposes no recording URL."""
        location = location_id or self.credentials.location_id
        resp = await self._request(
            "GET",
            f"/conversations/messages/{message_id}/locations/{location}/recording",
            operation="fetch_recording",
        )
        content = resp.content or b""
        if not content:
            raise CRMNotFoundError("HighLevel returned an empty recording", 404)
        logger.info(f"[crm] downloaded recording message_id={message_id} bytes={len(content)}")
        return content

    # -------------------------
    # Conversations / contacts
    # -------------------------

    async def list_conversations_for_contact(self, contact_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        resp = await self._request(
            "GET",
            "/conversations/search",
            operation="search_conversations",
            params={"locationId": self.credentials.location_id, "contactId": contact_id, "limit": limit},
        )
        data = resp.json() or {}
        return [c for c in data.get("conversations") or [] if isinstance(c, dict)]

    async def search_conversations(self, limit: int = 50) -> List[Dict[str, Any]]:
        resp = await self._request(
            "GET",
            "/conversations/search",
            operation="search_conversations",
            params={"locationId": self.credentials.location_id, "limit": limit},
        )
        data = resp.json() or {}
        return [c for c in data.get("conversations") or [] if isinstance(c, dict)]

    async def list_messages(self, conversation_id: str, limit: int = 100) -> List[Dict[str, Any]]:
        """Call-type messages of one conversation, newest first."""
        resp = await self._request(
            "GET",
            f"/conversations/{conversation_id}/messages",
            operation="list_messages",
            params={"limit": limit},
        )
        calls = [m for m in unwrap_messages(resp.json()) if is_call_message(m)]
        calls.sort(key=lambda m: _parse_date(m.get("dateAdded")), reverse=True)
        return calls

    async def list_call_messages_for_contact(self, contact_id: str) -> List[Dict[str, Any]]:
        """Every call message across the contact's conversations, newest first."""
        calls: List[Dict[str, Any]] = []
        for conversation in await self.list_conversations_for_contact(contact_id):
            conv_id = conversation.get("id")
            if not conv_id:
                continue
            try:
                for m in await self.list_messages(conv_id):
                    calls.append({**m, "conversationId": conv_id})
            except CRMNotFoundError:
                logger.warning(f"[crm] conversation {conv_id} disappeared while listing calls")
        calls.sort(key=lambda m: _parse_date(m.get("dateAdded")), reverse=True)
        return calls

    async def find_latest_call_message_id(self, contact_id: str) -> Optional[str]:
        """
        Best guess at the call a message-less webhook refers to: the newest
        call message for the contact. Wrong when two calls for the same
        contact finish at the same time.
        """
        calls = await self.list_call_messages_for_contact(contact_id)
        return calls[0].get("id") if calls else None

    async def list_contacts(self, limit: int = 100) -> List[Dict[str, Any]]:
        resp = await self._request(
            "GET",
            "/contacts/",
            operation="list_contacts",
            params={"locationId": self.credentials.location_id, "limit": limit},
        )
        data = resp.json() or {}
        return [c for c in data.get("contacts") or [] if isinstance(c, dict)]

    async def post_note(self, contact_id: str, body: str) -> Dict[str, Any]:
        resp = await self._request(
            "POST",
            f"/contacts/{contact_id}/notes",
            operation="post_note",
            json={"body": body},
        )
        logger.info(f"[crm] posted note to contact {contact_id}")
        return resp.json() if resp.content else {}

    async def aclose(self) -> None:
        await self._http.aclose()


def get_crm_gateway(credentials: TenantCredentials) -> CRMGateway:
    return CRMGateway.for_tenant(credentials)
