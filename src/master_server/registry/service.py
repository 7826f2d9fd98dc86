"""
Registry Service for the master server.

Validates and executes the registry operations. The service keeps no state
of its own; every decision is made against the storage.
"""

from datetime import datetime, timezone, timedelta
from typing import Any, Callable, Dict, List, Optional
from dataclasses import dataclass
from enum import Enum

from ..utils.config import RegistryConfig
from ..utils.errors import (
    AddressMismatchError,
    IdentityMismatchError,
    InvalidInputError,
    NotFoundError,
    PortMismatchError,
)
from ..utils.logging import get_logger
from ..utils.validators import coerce_port, register_schema, server_name_validator
from .storage import RegistryStorage, RegistrationEntry

logger = get_logger(__name__)


# Payload keys an update may change; everything else is ignored
UPDATE_ALLOWED_FIELDS = ("name",)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RegisterOutcome(str, Enum):
    """Which path a registration took."""
    CREATED = "created"
    UPDATED = "updated"


@dataclass
class RegisterResult:
    """Result of a register call."""
    entry: RegistrationEntry
    outcome: RegisterOutcome

    @property
    def created(self) -> bool:
        return self.outcome is RegisterOutcome.CREATED


class RegistryService:
    """
    Registry operations keyed on the caller's observed address.

    Every mutation after registration is accepted only when the caller's
    (address, port) equals the stored endpoint of the registration.
    """

    def __init__(
        self,
        storage: RegistryStorage,
        config: Optional[RegistryConfig] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        """
        Initialize the service.

        Args:
            storage: Registry storage instance
            config: Liveness configuration
            clock: Source of "now" (UTC); injectable for tests
        """
        self.storage = storage
        self.config = config or RegistryConfig()
        self.clock = clock

    @property
    def liveness_window(self) -> timedelta:
        return timedelta(seconds=self.config.liveness_window_seconds)

    async def register(self, address: str, name: Any, port: Any) -> RegisterResult:
        """
        Register a server, or refresh it when its endpoint is already known.

        Args:
            address: Caller address observed by the transport
            name: Display name
            port: Port the server listens on

        Returns:
            The stored registration and whether it was created or updated
        """
        register_schema().validate({"name": name, "port": port})
        name = name.strip()
        port = coerce_port(port)
        now = self.clock()

        existing = await self.storage.find_by_endpoint(address, port)

        if existing is None:
            return await self._create(address, name, port, now)

        duplicates = await self.storage.count_by_endpoint(address, port)
        if duplicates > 1:
            logger.warning("duplicate_registrations_for_endpoint",
                           address=address, port=port, count=duplicates,
                           chosen_id=existing.id)

        fields: Dict[str, Any] = {"last_seen": now}
        if existing.name != name:
            fields["name"] = name

        entry = await self.storage.update_fields(
            existing.id, fields, endpoint=(address, port)
        )
        if entry is None:
            # Deleted between lookup and update (deregister or reaper)
            return await self._create(address, name, port, now)

        logger.info("registration_refreshed", id=entry.id, address=address,
                    port=port, renamed="name" in fields)
        return RegisterResult(entry=entry, outcome=RegisterOutcome.UPDATED)

    async def heartbeat(self, address: str, registration_id: str, port: Any) -> RegistrationEntry:
        """Prove liveness; advances lastSeen."""
        port = coerce_port(port)
        await self._authorize(address, registration_id, port)

        entry = await self._touch(address, registration_id, port, {"last_seen": self.clock()})
        logger.debug("heartbeat_accepted", id=registration_id)
        return entry

    async def update(
        self,
        address: str,
        registration_id: str,
        port: Any,
        payload: Dict[str, Any]
    ) -> RegistrationEntry:
        """
        Change mutable fields of a registration.

        The payload must restate the registration id. Keys outside
        UPDATE_ALLOWED_FIELDS are ignored. An update also counts as a heartbeat.
        """
        port = coerce_port(port)
        if not isinstance(payload, dict):
            raise InvalidInputError(
                field="body", value=payload,
                constraint="request body must be a JSON object",
                message="Request body must be a JSON object",
            )

        restated_id = payload.get("id")
        if restated_id != registration_id:
            raise IdentityMismatchError(
                f"Request path id ({registration_id}) and request body id "
                f"({restated_id}) must match"
            )

        fields: Dict[str, Any] = {}
        for key in UPDATE_ALLOWED_FIELDS:
            if key in payload:
                fields[key] = payload[key]

        await self._authorize(address, registration_id, port)

        if "name" in fields:
            server_name_validator().validate(fields["name"])
            fields["name"] = fields["name"].strip()

        fields["last_seen"] = self.clock()
        entry = await self._touch(address, registration_id, port, fields)
        logger.info("registration_updated", id=registration_id,
                    fields=sorted(k for k in fields if k != "last_seen"))
        return entry

    async def deregister(self, address: str, registration_id: str, port: Any) -> None:
        """Remove a registration on clean shutdown."""
        port = coerce_port(port)
        await self._authorize(address, registration_id, port)

        removed = await self.storage.delete(registration_id, endpoint=(address, port))
        if not removed:
            raise NotFoundError()

        logger.info("registration_removed", id=registration_id,
                    address=address, port=port)

    async def list_live(self) -> List[RegistrationEntry]:
        """Registrations seen within the liveness window, in no particular order."""
        threshold = self.clock() - self.liveness_window
        return await self.storage.list_seen_since(threshold)

    async def _create(self, address: str, name: str, port: int, now: datetime) -> RegisterResult:
        registration_id = await self.storage.create(name, address, port, now)
        entry = RegistrationEntry(
            id=registration_id,
            name=name,
            address=address,
            port=port,
            last_seen=now,
        )
        logger.info("registration_created", id=registration_id,
                    address=address, port=port, name=name)
        return RegisterResult(entry=entry, outcome=RegisterOutcome.CREATED)

    async def _authorize(self, address: str, registration_id: str, port: int) -> RegistrationEntry:
        """Check that the caller owns the registration."""
        entry = await self.storage.get(registration_id)
        if entry is None:
            raise NotFoundError()

        if entry.port != port:
            logger.warning("port_mismatch", id=registration_id,
                           stored_port=entry.port, port=port)
            raise PortMismatchError(
                f"Port mismatch: registered port is not {port}; register again"
            )

        if not entry.matches_caller(address, port):
            logger.warning("address_mismatch", id=registration_id, address=address)
            raise AddressMismatchError(
                "Address mismatch: only the registering address may modify this server"
            )

        return entry

    async def _touch(
        self,
        address: str,
        registration_id: str,
        port: int,
        fields: Dict[str, Any]
    ) -> RegistrationEntry:
        entry = await self.storage.update_fields(
            registration_id, fields, endpoint=(address, port)
        )
        if entry is None:
            raise NotFoundError()
        return entry


__all__ = [
    'RegistryService',
    'RegisterOutcome',
    'RegisterResult',
    'UPDATE_ALLOWED_FIELDS',
    'utc_now',
]
