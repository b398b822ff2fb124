"""SQLite record store implementation."""

import json
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

import aiosqlite

from ..config import resolve_db_path
from ..errors import PersistenceError
from ..models import (
    ApplicantRecord,
    ApplicationStatus,
    BusMessage,
    CommunityStatus,
    ConversationState,
    ConversationStep,
    Topic,
    TraceEvent,
    TurnRecord,
    WaiterKind,
)


def _to_text(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _from_text(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


_STATE_COLUMNS = """
    user_id, channel_id, current_step, active_waiter_kind, step_entry_time,
    timeout_at, attempt_count, last_intent, last_processed_message_id,
    vouch_initiator_id, vouch_prompt_message_id
"""

_APPLICANT_COLUMNS = """
    user_id, username, channel_id, role, application_status,
    community_status, vouched_by, joined_at, last_activity_at
"""

_TURN_COLUMNS = """
    seq, user_id, channel_id, author, content, timestamp,
    external_message_id, classifier_output
"""


class IStorage(Protocol):
    """Durable record store keyed by user identity."""

    async def init(self) -> None:
        """Initialize database and create tables."""
        ...

    async def close(self) -> None:
        """Close database connection."""
        ...

    # Applicants
    async def save_applicant(self, applicant: ApplicantRecord) -> None:
        """Upsert an applicant profile (not its conversation)."""
        ...

    async def get_applicant(self, user_id: str) -> ApplicantRecord | None:
        """Get an applicant with its conversation state attached."""
        ...

    async def find_applicant_by_channel(self, channel_id: str) -> ApplicantRecord | None:
        """Get the applicant bound to a private channel."""
        ...

    async def touch_activity(self, user_id: str, at: datetime) -> None:
        """Update last_activity_at."""
        ...

    async def list_inactive_applicants(self, cutoff: datetime) -> list[ApplicantRecord]:
        """Applicants with a channel and no activity since cutoff."""
        ...

    # ConversationState
    async def save_conversation_state(self, state: ConversationState) -> None:
        """Upsert conversation state."""
        ...

    async def get_conversation_state(self, user_id: str) -> ConversationState | None:
        """Get conversation state for a user."""
        ...

    async def compare_and_set_state(
        self,
        state: ConversationState,
        expected_step: ConversationStep,
        expected_processed_id: str | None,
    ) -> bool:
        """Write state only if the stored step and processed id still match."""
        ...

    async def mark_message_processed(
        self, user_id: str, expected_previous: str | None, message_id: str
    ) -> bool:
        """Atomically advance last_processed_message_id."""
        ...

    async def list_armed_states(self) -> list[ConversationState]:
        """States that have a waiter armed."""
        ...

    # Turns
    async def append_turn(self, turn: TurnRecord) -> bool:
        """Append a turn. False if the external message id is already logged."""
        ...

    async def get_turns(self, user_id: str, limit: int | None = None) -> list[TurnRecord]:
        """Turns for a user in chronological order."""
        ...

    # TraceEvents
    async def save_trace_event(self, event: TraceEvent) -> None:
        """Save a trace event."""
        ...

    async def get_trace_events(
        self,
        after: datetime | None = None,
        event_types: list[str] | None = None,
        actor: str | None = None,
        limit: int = 100,
    ) -> list[TraceEvent]:
        """Get trace events with optional filters."""
        ...

    # BusMessages
    async def save_bus_message(self, message: BusMessage) -> None:
        """Save a bus message."""
        ...

    async def get_bus_messages(self, limit: int = 100) -> list[BusMessage]:
        """Get bus messages (newest first)."""
        ...

    # Lifecycle
    async def clear(self) -> None:
        """Clear all data."""
        ...


class Storage:
    """SQLite record store."""

    def __init__(self, db_path: str | Path | None = None):
        if db_path is None:
            self._db_path = resolve_db_path()
        else:
            self._db_path = resolve_db_path(db_path)
        self._conn: aiosqlite.Connection | None = None

    async def init(self) -> None:
        """Initialize database and create tables."""
        self._conn = await aiosqlite.connect(self._db_path)

        schema_path = Path(__file__).parent / "schema.sql"
        with open(schema_path, "r", encoding="utf-8") as f:
            schema_sql = f.read()
        await self._conn.executescript(schema_sql)
        await self._conn.commit()

    async def close(self) -> None:
        """Close database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None

    def _connection(self) -> aiosqlite.Connection:
        if not self._conn:
            raise RuntimeError("Storage not initialized")
        return self._conn

    async def _write(self, sql: str, params: tuple) -> int:
        """Execute a write and commit; returns the affected row count."""
        conn = self._connection()
        try:
            cursor = await conn.execute(sql, params)
            await conn.commit()
            return cursor.rowcount
        except aiosqlite.Error as e:
            raise PersistenceError(str(e)) from e

    async def _fetch(self, sql: str, params: tuple) -> list:
        conn = self._connection()
        try:
            cursor = await conn.execute(sql, params)
            return list(await cursor.fetchall())
        except aiosqlite.Error as e:
            raise PersistenceError(str(e)) from e

    # Applicants
    async def save_applicant(self, applicant: ApplicantRecord) -> None:
        """Upsert an applicant profile (not its conversation)."""
        await self._write(
            f"""
            INSERT OR REPLACE INTO applicants ({_APPLICANT_COLUMNS}, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
            """,
            (
                applicant.user_id,
                applicant.username,
                applicant.channel_id,
                applicant.role,
                applicant.application_status.value,
                applicant.community_status.value,
                applicant.vouched_by,
                _to_text(applicant.joined_at),
                _to_text(applicant.last_activity_at),
            ),
        )

    async def get_applicant(self, user_id: str) -> ApplicantRecord | None:
        """Get an applicant with its conversation state attached."""
        rows = await self._fetch(
            f"SELECT {_APPLICANT_COLUMNS} FROM applicants WHERE user_id = ?",
            (user_id,),
        )
        if not rows:
            return None

        applicant = self._row_to_applicant(rows[0])
        applicant.conversation = await self.get_conversation_state(user_id)
        return applicant

    async def find_applicant_by_channel(self, channel_id: str) -> ApplicantRecord | None:
        """Get the applicant bound to a private channel."""
        rows = await self._fetch(
            f"SELECT {_APPLICANT_COLUMNS} FROM applicants WHERE channel_id = ?",
            (channel_id,),
        )
        if not rows:
            return None

        applicant = self._row_to_applicant(rows[0])
        applicant.conversation = await self.get_conversation_state(applicant.user_id)
        return applicant

    async def touch_activity(self, user_id: str, at: datetime) -> None:
        """Update last_activity_at."""
        await self._write(
            """
            UPDATE applicants
            SET last_activity_at = ?, updated_at = CURRENT_TIMESTAMP
            WHERE user_id = ?
            """,
            (_to_text(at), user_id),
        )

    async def list_inactive_applicants(self, cutoff: datetime) -> list[ApplicantRecord]:
        """Applicants with a channel and no activity since cutoff."""
        rows = await self._fetch(
            f"""
            SELECT {_APPLICANT_COLUMNS}
            FROM applicants
            WHERE channel_id IS NOT NULL
              AND COALESCE(last_activity_at, joined_at) < ?
            """,
            (_to_text(cutoff),),
        )
        applicants = []
        for row in rows:
            applicant = self._row_to_applicant(row)
            applicant.conversation = await self.get_conversation_state(applicant.user_id)
            applicants.append(applicant)
        return applicants

    @staticmethod
    def _row_to_applicant(row) -> ApplicantRecord:
        return ApplicantRecord(
            user_id=row[0],
            username=row[1],
            channel_id=row[2],
            role=row[3],
            application_status=ApplicationStatus(row[4]),
            community_status=CommunityStatus(row[5]),
            vouched_by=row[6],
            joined_at=_from_text(row[7]),
            last_activity_at=_from_text(row[8]),
        )

    # ConversationState
    async def save_conversation_state(self, state: ConversationState) -> None:
        """Upsert conversation state."""
        await self._write(
            f"""
            INSERT OR REPLACE INTO conversation_states ({_STATE_COLUMNS}, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
            """,
            self._state_params(state),
        )

    async def get_conversation_state(self, user_id: str) -> ConversationState | None:
        """Get conversation state for a user."""
        rows = await self._fetch(
            f"SELECT {_STATE_COLUMNS} FROM conversation_states WHERE user_id = ?",
            (user_id,),
        )
        if not rows:
            return None
        return self._row_to_state(rows[0])

    async def compare_and_set_state(
        self,
        state: ConversationState,
        expected_step: ConversationStep,
        expected_processed_id: str | None,
    ) -> bool:
        """Write state only if the stored step and processed id still match."""
        params = self._state_params(state)
        updated = await self._write(
            """
            UPDATE conversation_states
            SET channel_id = ?, current_step = ?, active_waiter_kind = ?,
                step_entry_time = ?, timeout_at = ?, attempt_count = ?,
                last_intent = ?, last_processed_message_id = ?,
                vouch_initiator_id = ?, vouch_prompt_message_id = ?,
                updated_at = CURRENT_TIMESTAMP
            WHERE user_id = ?
              AND current_step = ?
              AND last_processed_message_id IS ?
            """,
            (
                *params[1:],
                state.user_id,
                expected_step.value,
                expected_processed_id,
            ),
        )
        return updated == 1

    async def mark_message_processed(
        self, user_id: str, expected_previous: str | None, message_id: str
    ) -> bool:
        """Atomically advance last_processed_message_id."""
        updated = await self._write(
            """
            UPDATE conversation_states
            SET last_processed_message_id = ?, updated_at = CURRENT_TIMESTAMP
            WHERE user_id = ? AND last_processed_message_id IS ?
            """,
            (message_id, user_id, expected_previous),
        )
        return updated == 1

    async def list_armed_states(self) -> list[ConversationState]:
        """States that have a waiter armed."""
        rows = await self._fetch(
            f"""
            SELECT {_STATE_COLUMNS}
            FROM conversation_states
            WHERE active_waiter_kind != ?
            ORDER BY timeout_at ASC
            """,
            (WaiterKind.NONE.value,),
        )
        return [self._row_to_state(row) for row in rows]

    @staticmethod
    def _state_params(state: ConversationState) -> tuple:
        return (
            state.user_id,
            state.channel_id,
            state.current_step.value,
            state.active_waiter_kind.value,
            _to_text(state.step_entry_time),
            _to_text(state.timeout_at),
            state.attempt_count,
            state.last_intent,
            state.last_processed_message_id,
            state.vouch_initiator_id,
            state.vouch_prompt_message_id,
        )

    @staticmethod
    def _row_to_state(row) -> ConversationState:
        return ConversationState(
            user_id=row[0],
            channel_id=row[1],
            current_step=ConversationStep(row[2]),
            active_waiter_kind=WaiterKind(row[3]),
            step_entry_time=_from_text(row[4]),
            timeout_at=_from_text(row[5]),
            attempt_count=row[6],
            last_intent=row[7],
            last_processed_message_id=row[8],
            vouch_initiator_id=row[9],
            vouch_prompt_message_id=row[10],
        )

    # Turns
    async def append_turn(self, turn: TurnRecord) -> bool:
        """Append a turn. False if the external message id is already logged."""
        inserted = await self._write(
            """
            INSERT OR IGNORE INTO turn_records
            (user_id, channel_id, author, content, timestamp,
             external_message_id, classifier_output)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                turn.user_id,
                turn.channel_id,
                turn.author,
                turn.content,
                _to_text(turn.timestamp),
                turn.external_message_id,
                json.dumps(turn.classifier_output)
                if turn.classifier_output is not None
                else None,
            ),
        )
        return inserted == 1

    async def get_turns(self, user_id: str, limit: int | None = None) -> list[TurnRecord]:
        """Turns for a user in chronological order."""
        if limit:
            # Newest `limit` turns, returned oldest first
            rows = await self._fetch(
                f"""
                SELECT * FROM (
                    SELECT {_TURN_COLUMNS} FROM turn_records
                    WHERE user_id = ?
                    ORDER BY timestamp DESC, seq DESC
                    LIMIT ?
                ) ORDER BY timestamp ASC, seq ASC
                """,
                (user_id, limit),
            )
        else:
            rows = await self._fetch(
                f"""
                SELECT {_TURN_COLUMNS} FROM turn_records
                WHERE user_id = ?
                ORDER BY timestamp ASC, seq ASC
                """,
                (user_id,),
            )

        return [
            TurnRecord(
                seq=row[0],
                user_id=row[1],
                channel_id=row[2],
                author=row[3],
                content=row[4],
                timestamp=_from_text(row[5]),
                external_message_id=row[6],
                classifier_output=json.loads(row[7]) if row[7] else None,
            )
            for row in rows
        ]

    # TraceEvents
    async def save_trace_event(self, event: TraceEvent) -> None:
        """Save a trace event."""
        await self._write(
            """
            INSERT INTO trace_events (id, event_type, actor, data, timestamp)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                event.id or str(uuid.uuid4()),
                event.event_type,
                event.actor,
                json.dumps(event.data, default=str),
                _to_text(event.timestamp),
            ),
        )

    async def get_trace_events(
        self,
        after: datetime | None = None,
        event_types: list[str] | None = None,
        actor: str | None = None,
        limit: int = 100,
    ) -> list[TraceEvent]:
        """Get trace events with optional filters."""
        conditions = []
        params: list = []

        if after:
            conditions.append("timestamp > ?")
            params.append(_to_text(after))
        if event_types:
            placeholders = ",".join("?" * len(event_types))
            conditions.append(f"event_type IN ({placeholders})")
            params.extend(event_types)
        if actor:
            conditions.append("actor = ?")
            params.append(actor)

        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        query = f"""
            SELECT id, event_type, actor, data, timestamp
            FROM trace_events
            {where_clause}
            ORDER BY timestamp DESC
            LIMIT ?
        """
        params.append(limit)

        rows = await self._fetch(query, tuple(params))

        return [
            TraceEvent(
                id=row[0],
                event_type=row[1],
                actor=row[2],
                data=json.loads(row[3]),
                timestamp=_from_text(row[4]),
            )
            for row in rows
        ]

    # BusMessages
    async def save_bus_message(self, message: BusMessage) -> None:
        """Save a bus message."""
        await self._write(
            """
            INSERT INTO bus_messages (id, topic, payload, source, timestamp)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                message.id or str(uuid.uuid4()),
                message.topic.value,
                json.dumps(message.payload, default=str),
                message.source,
                _to_text(message.timestamp),
            ),
        )

    async def get_bus_messages(self, limit: int = 100) -> list[BusMessage]:
        """Get bus messages (newest first)."""
        rows = await self._fetch(
            """
            SELECT id, topic, payload, source, timestamp
            FROM bus_messages
            ORDER BY timestamp DESC
            LIMIT ?
            """,
            (limit,),
        )

        return [
            BusMessage(
                id=row[0],
                topic=Topic(row[1]),
                payload=json.loads(row[2]),
                source=row[3],
                timestamp=_from_text(row[4]),
            )
            for row in rows
        ]

    # Lifecycle
    async def clear(self) -> None:
        """Clear all data."""
        conn = self._connection()

        tables = [
            "turn_records",
            "conversation_states",
            "applicants",
            "trace_events",
            "bus_messages",
        ]

        for table in tables:
            await conn.execute(f"DELETE FROM {table}")

        await conn.commit()
