"""Wire the realtime relay to the SQL stores and application settings."""

from __future__ import annotations

from sqlalchemy.orm import Session, sessionmaker

from app.config import get_settings
from app.core.security import get_credential_verifier
from app.services.stores import SqlConversationStore, SqlMessageStore, SqlUserStore
from parley.realtime.managers import RealtimeServices, configure_realtime


def build_realtime(session_factory: sessionmaker[Session]) -> RealtimeServices:
    settings = get_settings()
    return configure_realtime(
        verifier=get_credential_verifier(),
        users=SqlUserStore(session_factory),
        conversations=SqlConversationStore(session_factory),
        messages=SqlMessageStore(session_factory),
        redis_url=settings.realtime_redis_url,
        namespace=settings.realtime_namespace,
        node_id=settings.realtime_node_id,
        max_message_length=settings.chat_message_max_length,
    )
