"""Agent messaging, shared resources and collaboration sessions."""

import inspect
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime, timedelta
from typing import Any

import structlog

from .constants import SYSTEM_SENDER, Channels, Limits
from .enums import MessagePriority, MessageType, Permission, ResourceType
from .events import EventBus
from .exceptions import (
    AccessDeniedError,
    MessageNotFoundError,
    ResourceNotFoundError,
    SessionNotFoundError,
    ValidationError,
)
from .models import (
    CollaborationMessage,
    CollaborationSession,
    ResourcePermissions,
    SharedResource,
    utcnow,
)
from .persistence import Store

logger = structlog.get_logger()

MESSAGES = "messages"
RESOURCES = "shared_resources"
SESSIONS = "collaboration_sessions"

UrgentHandler = Callable[[CollaborationMessage], Awaitable[Any] | Any]


class CollaborationBus:
    """Point-to-point and broadcast messaging plus the shared resource store.

    Delivery is fire-and-forget: a message is persisted and published on the
    event bus. Urgent messages additionally invoke the recipient's registered
    handler, if any, before :meth:`send_message` returns.

    Shared resources are checked against the caller on every access. Expired
    resources are removed the first time they are touched after expiry.
    """

    def __init__(
        self,
        store: Store,
        bus: EventBus | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.bus = bus or store.bus
        self.clock = clock
        self._urgent_handlers: dict[str, UrgentHandler] = {}

    # Messaging

    def register_urgent_handler(self, agent_id: str, handler: UrgentHandler) -> None:
        self._urgent_handlers[agent_id] = handler

    def remove_urgent_handler(self, agent_id: str) -> None:
        self._urgent_handlers.pop(agent_id, None)

    async def send_message(
        self,
        from_agent_id: str,
        to_agent_id: str | None,
        content: Any,
        type: MessageType | str = MessageType.NOTIFICATION,
        channel: str | None = None,
        priority: MessagePriority | str = MessagePriority.MEDIUM,
        requires_response: bool = False,
        expires_in: float | None = None,
        correlation_id: str | None = None,
    ) -> CollaborationMessage:
        """Persist and publish a message. ``expires_in`` is in minutes."""
        now = self.clock()
        message = CollaborationMessage(
            from_agent_id=from_agent_id,
            to_agent_id=to_agent_id,
            channel=channel,
            type=MessageType(type),
            content=content,
            priority=MessagePriority(priority),
            requires_response=requires_response,
            correlation_id=correlation_id,
            expires_at=now + timedelta(minutes=expires_in) if expires_in else None,
            created_at=now,
            updated_at=now,
        )
        await self.store.insert(MESSAGES, message.to_record())
        logger.info(
            "Message sent",
            message_id=message.id,
            from_agent=from_agent_id,
            to_agent=to_agent_id or "broadcast",
            type=message.type.value,
        )
        await self.bus.publish(Channels.MESSAGES, message)

        if message.priority == MessagePriority.URGENT and to_agent_id:
            await self._invoke_urgent_handler(message)
        return message

    async def broadcast(
        self, from_agent_id: str, content: Any, **options: Any
    ) -> CollaborationMessage:
        options.setdefault("type", MessageType.BROADCAST)
        return await self.send_message(from_agent_id, None, content, **options)

    async def _invoke_urgent_handler(self, message: CollaborationMessage) -> None:
        handler = self._urgent_handlers.get(message.to_agent_id)
        if handler is None:
            return
        try:
            result = handler(message)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(
                "Urgent message handler failed",
                message_id=message.id,
                agent_id=message.to_agent_id,
                error=str(e),
            )

    async def get_message(self, message_id: str) -> CollaborationMessage:
        record = await self.store.get(MESSAGES, message_id)
        if record is None:
            raise MessageNotFoundError(message_id)
        return CollaborationMessage.from_record(record)

    async def get_messages(
        self,
        agent_id: str,
        unread_only: bool = False,
        channel: str | None = None,
        type: MessageType | str | None = None,
        since: datetime | None = None,
        limit: int | None = Limits.DEFAULT_MESSAGE_LIMIT,
    ) -> list[CollaborationMessage]:
        """Messages addressed to ``agent_id`` plus broadcasts, newest first."""
        now = self.clock()
        messages = []
        for record in await self.store.query(MESSAGES):
            message = CollaborationMessage.from_record(record)
            if message.to_agent_id not in (agent_id, None):
                continue
            if message.is_expired(now):
                continue
            if unread_only and message.read_at is not None:
                continue
            if channel is not None and message.channel != channel:
                continue
            if type is not None and message.type != MessageType(type):
                continue
            if since is not None and message.created_at < since:
                continue
            messages.append(message)

        messages.sort(key=lambda m: m.created_at, reverse=True)
        return messages[:limit] if limit else messages

    async def mark_read(self, message_id: str, agent_id: str) -> CollaborationMessage:
        """Set ``read_at``; only the addressed recipient can mark a message read."""
        message = await self.get_message(message_id)
        if message.to_agent_id != agent_id:
            return message
        if message.read_at is None:
            now = self.clock()
            record = await self.store.update(
                MESSAGES, message_id, {"read_at": now.isoformat(), "updated_at": now.isoformat()}
            )
            message = CollaborationMessage.from_record(record)
        return message

    async def respond(
        self, original_id: str, from_agent_id: str, content: Any, **options: Any
    ) -> CollaborationMessage:
        """Reply to a message, correlating the reply with the original."""
        original = await self.get_message(original_id)
        response = await self.send_message(
            from_agent_id,
            original.from_agent_id,
            content,
            type=MessageType.RESPONSE,
            correlation_id=original.correlation_id or original.id,
            **options,
        )
        now = self.clock()
        await self.store.update(
            MESSAGES,
            original_id,
            {"responded_at": now.isoformat(), "updated_at": now.isoformat()},
        )
        return response

    async def conversation(self, correlation_id: str) -> list[CollaborationMessage]:
        """All messages sharing a correlation id, oldest first."""
        records = await self.store.query(MESSAGES, correlation_id=correlation_id)
        messages = [CollaborationMessage.from_record(r) for r in records]
        return sorted(messages, key=lambda m: m.created_at)

    # Shared resources

    async def _find_resource(self, key: str) -> SharedResource | None:
        records = await self.store.query(RESOURCES, key=key)
        return SharedResource.from_record(records[0]) if records else None

    async def _load_live(self, key: str) -> SharedResource | None:
        """Fetch a resource, purging it if it has expired."""
        resource = await self._find_resource(key)
        if resource is None:
            return None
        if resource.is_expired(self.clock()):
            await self.store.delete(RESOURCES, resource.id)
            logger.debug("Expired shared resource purged", key=key)
            return None
        return resource

    async def create_resource(
        self,
        key: str,
        value: Any,
        owner_agent_id: str,
        type: ResourceType | str = ResourceType.DATA,
        read: Iterable[str] | None = None,
        write: Iterable[str] | None = None,
        delete: Iterable[str] | None = None,
        expires_in: float | None = None,
    ) -> SharedResource:
        """Create a resource. Permission lists default to the owner alone."""
        if not key:
            raise ValidationError("Resource key is required")
        if await self._load_live(key) is not None:
            raise ValidationError(f"Shared resource '{key}' already exists")

        now = self.clock()
        resource = SharedResource(
            key=key,
            value=value,
            type=ResourceType(type),
            owner_agent_id=owner_agent_id,
            permissions=ResourcePermissions(
                read=list(read) if read is not None else [owner_agent_id],
                write=list(write) if write is not None else [owner_agent_id],
                delete=list(delete) if delete is not None else [owner_agent_id],
            ),
            expires_at=now + timedelta(minutes=expires_in) if expires_in else None,
            created_at=now,
            updated_at=now,
        )
        await self.store.insert(RESOURCES, resource.to_record())
        logger.info("Shared resource created", key=key, owner=owner_agent_id)
        return resource

    async def get_resource(self, key: str, agent_id: str) -> SharedResource | None:
        resource = await self._load_live(key)
        if resource is None:
            return None
        if not resource.allows(agent_id, Permission.READ):
            raise AccessDeniedError(Permission.READ.value, f"resource '{key}'")
        return resource

    async def update_resource(self, key: str, value: Any, agent_id: str) -> SharedResource:
        """Replace the value and bump the version."""
        resource = await self._load_live(key)
        if resource is None:
            raise ResourceNotFoundError(key)
        if not resource.allows(agent_id, Permission.WRITE):
            raise AccessDeniedError(Permission.WRITE.value, f"resource '{key}'")

        updated = resource.model_copy(
            update={"value": value, "version": resource.version + 1, "updated_at": self.clock()}
        ).to_record()
        record = await self.store.update(
            RESOURCES,
            resource.id,
            {k: updated[k] for k in ("value", "version", "updated_at")},
        )
        logger.debug("Shared resource updated", key=key, version=record["version"])
        return SharedResource.from_record(record)

    async def delete_resource(self, key: str, agent_id: str) -> bool:
        resource = await self._load_live(key)
        if resource is None:
            return False
        if not resource.allows(agent_id, Permission.DELETE):
            raise AccessDeniedError(Permission.DELETE.value, f"resource '{key}'")
        await self.store.delete(RESOURCES, resource.id)
        logger.info("Shared resource deleted", key=key, by=agent_id)
        return True

    async def grant_permission(
        self,
        key: str,
        target_agent_id: str,
        permission: Permission | str,
        owner_agent_id: str,
    ) -> SharedResource:
        """Add an agent to a permission list. Only the owner may grant."""
        permission = Permission(permission)
        resource = await self._load_live(key)
        if resource is None:
            raise ResourceNotFoundError(key)
        if resource.owner_agent_id != owner_agent_id:
            raise AccessDeniedError(permission.value, "only the owner can grant permissions")

        members = resource.permissions.members(permission)
        if target_agent_id in members:
            return resource
        permissions = resource.permissions.model_copy(
            update={permission.value: [*members, target_agent_id]}
        )
        record = await self.store.update(
            RESOURCES,
            resource.id,
            {
                "permissions": permissions.model_dump(mode="json"),
                "updated_at": self.clock().isoformat(),
            },
        )
        return SharedResource.from_record(record)

    # Sessions

    async def get_session(self, session_id: str) -> CollaborationSession:
        record = await self.store.get(SESSIONS, session_id)
        if record is None:
            raise SessionNotFoundError(session_id)
        return CollaborationSession.from_record(record)

    async def create_session(
        self,
        name: str,
        participants: Iterable[str],
        description: str | None = None,
        shared_context: dict[str, Any] | None = None,
    ) -> CollaborationSession:
        """Open a session and send each participant an invitation."""
        now = self.clock()
        session = CollaborationSession(
            name=name,
            description=description,
            participants=list(dict.fromkeys(participants)),
            shared_context=shared_context or {},
            created_at=now,
            updated_at=now,
        )
        await self.store.insert(SESSIONS, session.to_record())
        for participant in session.participants:
            await self.send_message(
                SYSTEM_SENDER,
                participant,
                {"type": "session_invitation", "session_id": session.id, "session_name": name},
            )
        logger.info(
            "Collaboration session created",
            session_id=session.id,
            participants=session.participants,
        )
        return session

    async def join_session(self, session_id: str, agent_id: str) -> CollaborationSession:
        session = await self.get_session(session_id)
        if agent_id in session.participants:
            return session

        participants = [*session.participants, agent_id]
        record = await self.store.update(
            SESSIONS,
            session_id,
            {"participants": participants, "updated_at": self.clock().isoformat()},
        )
        for participant in session.participants:
            await self.send_message(
                SYSTEM_SENDER,
                participant,
                {"type": "agent_joined", "session_id": session_id, "agent_id": agent_id},
            )
        return CollaborationSession.from_record(record)

    async def update_session_context(
        self, session_id: str, context: dict[str, Any], agent_id: str
    ) -> CollaborationSession:
        session = await self.get_session(session_id)
        if agent_id not in session.participants:
            raise AccessDeniedError("session", "not a session participant")
        record = await self.store.update(
            SESSIONS,
            session_id,
            {
                "shared_context": {**session.shared_context, **context},
                "updated_at": self.clock().isoformat(),
            },
        )
        return CollaborationSession.from_record(record)
