"""
Notification routing for captured requests.

Decides, per captured request, whether the endpoint's owner should get an
out-of-band notification and where it goes, then hands it to the transport.

Identity is ambiguous here: the owner key recorded when the endpoint was
created may be an email or a subject id, and notification preferences may
have been saved under either. Rather than special-casing, resolution is an
explicit, ordered chain over one settings table - first match wins:

    1. identity_key == subject_id     (only when the caller context has one;
                                       never on the unauthenticated webhook path)
    2. notification_email == owner_key
    3. identity_key == owner_key      (backward-compatible path)

Design decisions:
- Routing is best-effort and at-most-once: every failure is logged and
  swallowed, nothing is retried, nothing propagates to ingestion
- "No setting" and "disabled" are normal outcomes, not errors
- Preference writes upsert under every key the principal is known by, and
  changing the address purges stale rows pointing at the old one
"""

import logging
from dataclasses import dataclass
from typing import Optional

from capture.channels import NotificationResult, Transport
from capture.data_store import DataStore
from capture.errors import InvalidRequest
from capture.models import CapturedRequest, Endpoint, NotificationSetting, Principal
from capture.templates import render_request_notification

logger = logging.getLogger("notification_router")


@dataclass
class Resolution:
    """Which setting the chain picked, and which step picked it."""
    setting: NotificationSetting
    matched_by: str

    @property
    def address(self) -> Optional[str]:
        if self.setting.notification_email:
            return self.setting.notification_email
        # Rows keyed by an email with no explicit address deliver to the key
        if "@" in self.setting.identity_key:
            return self.setting.identity_key
        return None


class NotificationRouter:
    """
    Resolves notification settings for an endpoint owner and delivers.

    Example:
        router = NotificationRouter(data_store, EmailChannel())
        await router.route(endpoint.owner_key, endpoint, record)
    """

    def __init__(
        self,
        data_store: DataStore,
        transport: Transport,
        public_base_url: str = "http://localhost:3000",
    ):
        self.data_store = data_store
        self.transport = transport
        self.public_base_url = public_base_url.rstrip("/")

    def endpoint_url(self, endpoint_id: str) -> str:
        return f"{self.public_base_url}/{endpoint_id}"

    async def resolve(
        self,
        owner_key: Optional[str],
        subject_id: Optional[str] = None,
    ) -> Optional[Resolution]:
        """Walk the resolution chain; None when nothing matches."""
        chain = [
            ("subject_id", subject_id, self._by_identity_key),
            ("notification_email", owner_key, self._by_notification_email),
            ("identity_key", owner_key, self._by_identity_key),
        ]
        for matched_by, key, lookup in chain:
            if not key:
                continue
            setting = await lookup(key)
            if setting is not None:
                return Resolution(setting=setting, matched_by=matched_by)
        return None

    async def _by_identity_key(self, key: str) -> Optional[NotificationSetting]:
        return await self.data_store.get_setting(key)

    async def _by_notification_email(self, address: str) -> Optional[NotificationSetting]:
        matches = await self.data_store.find_settings_by_email(address)
        return matches[0] if matches else None

    async def route(
        self,
        owner_key: Optional[str],
        endpoint: Endpoint,
        record: CapturedRequest,
        subject_id: Optional[str] = None,
    ) -> Optional[NotificationResult]:
        """
        Notify the endpoint owner about a captured request, if they want it.

        Never raises. Returns the transport's result, or None when nothing
        was sent.
        """
        try:
            resolution = await self.resolve(owner_key, subject_id)
            if resolution is None:
                logger.debug(f"No notification setting for owner of {endpoint.id}")
                return None
            if not resolution.setting.enabled:
                logger.debug(f"Notifications disabled for {resolution.setting.identity_key}")
                return None

            address = resolution.address
            if not address:
                logger.info(f"Notifications enabled for {resolution.setting.identity_key} but no address set")
                return None

            message = render_request_notification(endpoint, record, self.endpoint_url(endpoint.id))
            logger.info(
                f"Notifying {address} about {endpoint.id}#{record.sequence} "
                f"(matched by {resolution.matched_by})"
            )
            result = await self.transport.deliver(address, message)
            if not result.success:
                logger.warning(f"Notification to {address} not delivered: {result.error}")
            return result
        except Exception as e:
            logger.error(f"Notification for {endpoint.id}#{record.sequence} failed: {e}")
            return None


class NotificationPreferences:
    """
    Preference writes for a verified principal.

    A principal can be known by a subject id and an email at the same time;
    every write lands under both keys so whichever one an endpoint's owner
    key happens to be, the router finds the same answer.
    """

    def __init__(self, data_store: DataStore):
        self.data_store = data_store

    async def get(self, principal: Principal) -> Optional[NotificationSetting]:
        for key in principal.identity_keys:
            setting = await self.data_store.get_setting(key)
            if setting is not None:
                return setting
        return None

    async def enable(self, principal: Principal) -> NotificationSetting:
        current = await self.get(principal)
        address = (current.notification_email if current else None) or principal.email
        return await self._write(principal, enabled=True, notification_email=address)

    async def disable(self, principal: Principal) -> NotificationSetting:
        current = await self.get(principal)
        address = current.notification_email if current else None
        return await self._write(principal, enabled=False, notification_email=address)

    async def set_email(self, principal: Principal, new_email: str) -> NotificationSetting:
        """
        Change where notifications go.

        Rows under other keys that still point at the old address are
        removed, so an address change never leaves two live delivery targets.
        """
        new_email = new_email.strip()
        if "@" not in new_email:
            raise InvalidRequest(f"Not an email address: {new_email!r}")

        current = await self.get(principal)
        old_email = current.notification_email if current else None
        setting = await self._write(
            principal,
            enabled=current.enabled if current else False,
            notification_email=new_email,
        )

        if old_email and old_email != new_email:
            stale = [
                s.identity_key
                for s in await self.data_store.find_settings_by_email(old_email)
                if s.identity_key not in principal.identity_keys
            ]
            removed = await self.data_store.delete_settings(stale)
            if removed:
                logger.info(f"Removed {removed} stale setting(s) still pointing at {old_email}")
        return setting

    async def _write(
        self,
        principal: Principal,
        enabled: bool,
        notification_email: Optional[str],
    ) -> NotificationSetting:
        setting = None
        for key in principal.identity_keys:
            setting = await self.data_store.upsert_setting(
                key, enabled=enabled, notification_email=notification_email
            )
        logger.info(
            f"Saved notification setting for {principal.subject_id}: "
            f"enabled={enabled}, email={notification_email}"
        )
        return setting
