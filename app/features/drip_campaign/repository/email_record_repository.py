"""
Persistence helpers for the email history (write-ahead delivery records).
"""

from datetime import datetime
from typing import Any

import psycopg

from app.db.helpers import (
    DatabaseError,
    execute_query,
    execute_transaction,
    fetch_all,
    fetch_one,
    fetch_val,
    with_db_retry,
)
from app.db.pool import get_db_transaction
from app.features.drip_campaign.domain import (
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_SENT,
    EmailRecord,
)
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

# Longer than content generation plus transmission timeouts combined
STALE_PENDING_SECONDS = 900


class EmailRecordRepositoryError(DatabaseError):
    """More specific exception for email history failures."""


RECORD_COLUMNS = """
    id, user_id, week_number, subject, content, action_item, delivery_status,
    sent_at, opened_at, click_count, provider_message_id, error_message, job_id, created_at
"""


def row_to_record(row: dict[str, Any] | None) -> EmailRecord | None:
    if not row:
        return None
    return EmailRecord(**row)


class EmailRecordRepository:
    """Reads and writes the email_history table."""

    async def create_pending_record(
        self,
        user_id: int,
        week_number: int,
        subject: str,
        content: str,
        action_item: str | None,
        *,
        exclusive: bool = True,
        job_id: str | None = None,
        stale_after_seconds: int = STALE_PENDING_SECONDS,
    ) -> EmailRecord | None:
        """
        Write the pending record before the message leaves the process.

        With exclusive=True the insert only happens when no pending or sent
        record exists for the same (user, week); None is returned otherwise.
        Before inserting, pending records that belong to an attempt which can no
        longer finish are marked failed: those older than stale_after_seconds,
        and those written by an earlier run of the same job_id (a job recovered
        after a crash). Resends (exclusive=False) always insert.
        """
        if not exclusive:
            query = f"""
                INSERT INTO email_history
                    (user_id, week_number, subject, content, action_item,
                     delivery_status, is_resend, job_id)
                VALUES (%s, %s, %s, %s, %s, %s, true, %s)
                RETURNING {RECORD_COLUMNS}
            """
            params = (user_id, week_number, subject, content, action_item, STATUS_PENDING, job_id)
            return row_to_record(await fetch_one(query, params))

        abandon_query = """
            UPDATE email_history
            SET delivery_status = %s, error_message = 'abandoned pending attempt'
            WHERE user_id = %s
              AND week_number = %s
              AND delivery_status = %s
              AND NOT is_resend
              AND (created_at < NOW() - make_interval(secs => %s) OR job_id = %s)
        """
        insert_query = f"""
            INSERT INTO email_history
                (user_id, week_number, subject, content, action_item, delivery_status, job_id)
            SELECT %s, %s, %s, %s, %s, %s, %s
            WHERE NOT EXISTS (
                SELECT 1 FROM email_history
                WHERE user_id = %s
                  AND week_number = %s
                  AND delivery_status IN (%s, %s)
                  AND NOT is_resend
            )
            RETURNING {RECORD_COLUMNS}
        """
        insert_params = (
            user_id,
            week_number,
            subject,
            content,
            action_item,
            STATUS_PENDING,
            job_id,
            user_id,
            week_number,
            STATUS_PENDING,
            STATUS_SENT,
        )

        try:
            async with await get_db_transaction() as conn:
                abandoned = await execute_query(
                    abandon_query,
                    (STATUS_FAILED, user_id, week_number, STATUS_PENDING, stale_after_seconds, job_id),
                    connection=conn,
                )
                row = await fetch_one(insert_query, insert_params, connection=conn)

        except DatabaseError as e:
            # Partial unique index lost a race with a concurrent insert
            if isinstance(e.__cause__, psycopg.errors.UniqueViolation):
                return None
            raise
        except psycopg.Error as e:
            raise EmailRecordRepositoryError(
                f"Failed to create pending record: {e}", operation="create_pending_record"
            ) from e
        except RuntimeError as e:
            raise EmailRecordRepositoryError(
                f"Store unavailable: {e}", operation="create_pending_record"
            ) from e

        if abandoned:
            logger.warning(
                "Abandoned unfinished pending email records",
                user_id=user_id,
                week_number=week_number,
                count=abandoned,
            )
        return row_to_record(row)

    async def get_live_record(self, user_id: int, week_number: int) -> EmailRecord | None:
        """The pending or sent scheduled record that blocks another insert for this week."""
        query = f"""
            SELECT {RECORD_COLUMNS}
            FROM email_history
            WHERE user_id = %s
              AND week_number = %s
              AND delivery_status IN (%s, %s)
              AND NOT is_resend
            ORDER BY id DESC
            LIMIT 1
        """
        row = await fetch_one(query, (user_id, week_number, STATUS_PENDING, STATUS_SENT))
        return row_to_record(row)

    @with_db_retry(max_retries=2)
    async def mark_sent(
        self,
        record_id: int,
        provider_message_id: str | None,
        *,
        user_id: int,
        advance_to_week: int | None,
    ) -> bool:
        """
        Mark a record sent and record progress on the user in one transaction.

        When advance_to_week is given the user's program_week only moves if it
        is exactly one behind. Returns whether the user row was updated.
        """
        mark_query = """
            UPDATE email_history
            SET delivery_status = %s, sent_at = NOW(), provider_message_id = %s,
                error_message = NULL
            WHERE id = %s
        """

        if advance_to_week is not None:
            user_query = """
                UPDATE users
                SET program_week = %s, last_email_sent_at = NOW(), updated_at = NOW()
                WHERE id = %s AND program_week = %s
            """
            user_params = (advance_to_week, user_id, advance_to_week - 1)
        else:
            user_query = """
                UPDATE users SET last_email_sent_at = NOW(), updated_at = NOW()
                WHERE id = %s
            """
            user_params = (user_id,)

        rowcounts = await execute_transaction(
            [
                (mark_query, (STATUS_SENT, provider_message_id, record_id)),
                (user_query, user_params),
            ]
        )

        if rowcounts[0] != 1:
            raise EmailRecordRepositoryError(
                f"Email record {record_id} not found", operation="mark_sent"
            )

        advanced = rowcounts[1] == 1
        if advance_to_week is not None and not advanced:
            logger.warning(
                "Program week not advanced, user already past this week",
                user_id=user_id,
                week_number=advance_to_week,
            )
        return advanced

    async def mark_failed(self, record_id: int, error: str) -> None:
        query = """
            UPDATE email_history
            SET delivery_status = %s, error_message = %s
            WHERE id = %s AND delivery_status = %s
        """
        await execute_query(query, (STATUS_FAILED, error[:1000], record_id, STATUS_PENDING))

    async def has_email_since(self, user_id: int, since: datetime) -> bool:
        """True if a message was sent, or is in flight, for this user since `since`."""
        query = """
            SELECT EXISTS (
                SELECT 1 FROM email_history
                WHERE user_id = %s
                  AND (
                    sent_at >= %s
                    OR (delivery_status = %s AND created_at >= %s)
                  )
            ) AS found
        """
        return bool(await fetch_val(query, (user_id, since, STATUS_PENDING, since)))

    async def get_recent_records(self, user_id: int, limit: int = 3) -> list[EmailRecord]:
        query = f"""
            SELECT {RECORD_COLUMNS}
            FROM email_history
            WHERE user_id = %s AND delivery_status = %s
            ORDER BY sent_at DESC NULLS LAST, id DESC
            LIMIT %s
        """
        rows = await fetch_all(query, (user_id, STATUS_SENT, limit))
        return [row_to_record(row) for row in rows]

    async def get_records_for_user(self, user_id: int) -> list[EmailRecord]:
        query = f"""
            SELECT {RECORD_COLUMNS}
            FROM email_history
            WHERE user_id = %s
            ORDER BY id
        """
        rows = await fetch_all(query, (user_id,))
        return [row_to_record(row) for row in rows]

    # Provider webhook updates, matched by provider message id

    async def mark_delivered(self, provider_message_id: str) -> int:
        query = """
            UPDATE email_history SET delivery_status = %s, sent_at = COALESCE(sent_at, NOW())
            WHERE provider_message_id = %s AND delivery_status = %s
        """
        # A bounce is final; a late delivery event never revives it
        return await execute_query(query, (STATUS_SENT, provider_message_id, STATUS_PENDING))

    async def record_open(self, provider_message_id: str) -> int:
        query = """
            UPDATE email_history SET opened_at = COALESCE(opened_at, NOW())
            WHERE provider_message_id = %s
        """
        return await execute_query(query, (provider_message_id,))

    async def record_click(self, provider_message_id: str) -> int:
        query = """
            UPDATE email_history SET click_count = click_count + 1
            WHERE provider_message_id = %s
        """
        return await execute_query(query, (provider_message_id,))

    async def mark_bounced(self, provider_message_id: str) -> int:
        query = """
            UPDATE email_history SET delivery_status = %s, error_message = 'bounced'
            WHERE provider_message_id = %s
        """
        return await execute_query(query, (STATUS_FAILED, provider_message_id))

    # Tracking pixel and click redirect, matched by record id

    async def track_open(self, record_id: int) -> int:
        query = """
            UPDATE email_history SET opened_at = COALESCE(opened_at, NOW())
            WHERE id = %s
        """
        return await execute_query(query, (record_id,))

    async def track_click(self, record_id: int) -> int:
        query = "UPDATE email_history SET click_count = click_count + 1 WHERE id = %s"
        return await execute_query(query, (record_id,))

    async def count_sent_since(self, since: datetime) -> int:
        query = """
            SELECT COUNT(*) AS sent FROM email_history
            WHERE delivery_status = %s AND sent_at >= %s
        """
        return int(await fetch_val(query, (STATUS_SENT, since)) or 0)

    async def count_by_status(self) -> dict[str, int]:
        query = """
            SELECT delivery_status, COUNT(*) AS count
            FROM email_history
            GROUP BY delivery_status
        """
        rows = await fetch_all(query)
        counts = {STATUS_PENDING: 0, STATUS_SENT: 0, STATUS_FAILED: 0}
        counts.update({row["delivery_status"]: int(row["count"]) for row in rows})
        return counts


email_record_repository = EmailRecordRepository()
