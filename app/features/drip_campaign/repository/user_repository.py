"""
Persistence helpers for enrolled users.

The users table is the single source of truth for eligibility: the store-side
filter keeps the candidate scan cheap, and progress (program_week) is only
advanced through a conditional update so it can never move backwards or skip.
"""

from typing import Any

from app.db.helpers import DatabaseError, fetch_all, fetch_one, with_db_retry
from app.features.drip_campaign.domain import PROGRAM_WEEKS, DripUser, LeadershipContext
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class DripUserRepositoryError(DatabaseError):
    """More specific exception for user repository failures."""


USER_SELECT_COLUMNS = """
    id, email, timezone, goals, program_week, is_active, last_email_sent_at,
    leadership_role, team_size, industry, years_in_leadership, work_environment,
    organization_size, leadership_challenges, created_at
"""


def row_to_user(row: dict[str, Any] | None) -> DripUser | None:
    if not row:
        return None

    context = LeadershipContext(
        current_role=row.get("leadership_role"),
        team_size=row.get("team_size"),
        industry=row.get("industry"),
        years_in_leadership=row.get("years_in_leadership"),
        work_environment=row.get("work_environment"),
        organization_size=row.get("organization_size"),
        leadership_challenges=row.get("leadership_challenges") or [],
    )

    return DripUser(
        id=row["id"],
        email=row["email"],
        timezone=row.get("timezone") or "UTC",
        goals=list(row.get("goals") or []),
        program_week=row.get("program_week") or 0,
        is_active=bool(row.get("is_active", True)),
        last_email_sent_at=row.get("last_email_sent_at"),
        context=context,
        created_at=row.get("created_at"),
    )


class DripUserRepository:
    """Reads and writes the users table."""

    async def get_user(self, user_id: int) -> DripUser | None:
        query = f"SELECT {USER_SELECT_COLUMNS} FROM users WHERE id = %s"
        return row_to_user(await fetch_one(query, (user_id,)))

    async def get_user_by_email(self, email: str) -> DripUser | None:
        query = f"SELECT {USER_SELECT_COLUMNS} FROM users WHERE lower(email) = lower(%s)"
        return row_to_user(await fetch_one(query, (email,)))

    async def create_user(
        self,
        email: str,
        timezone: str,
        goals: list[str],
        context: LeadershipContext | None = None,
    ) -> DripUser:
        """Insert a new enrolled user at program week 0."""
        context = context or LeadershipContext()

        query = f"""
            INSERT INTO users (
                email, timezone, goals, leadership_role, team_size, industry,
                years_in_leadership, work_environment, organization_size,
                leadership_challenges
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING {USER_SELECT_COLUMNS}
        """

        row = await fetch_one(
            query,
            (
                email,
                timezone,
                goals,
                context.current_role,
                context.team_size,
                context.industry,
                context.years_in_leadership,
                context.work_environment,
                context.organization_size,
                context.leadership_challenges,
            ),
        )
        if not row:
            raise DripUserRepositoryError("Failed to create user", operation="create_user")

        user = row_to_user(row)
        logger.info("User enrolled", user_id=user.id, timezone=timezone, goal_count=len(goals))
        return user

    async def deactivate(self, user_id: int) -> DripUser | None:
        """Soft delete: the user stays on record but is never scheduled again."""
        query = f"""
            UPDATE users SET is_active = false, updated_at = NOW()
            WHERE id = %s
            RETURNING {USER_SELECT_COLUMNS}
        """
        user = row_to_user(await fetch_one(query, (user_id,)))
        if user:
            logger.info("User deactivated", user_id=user_id)
        return user

    @with_db_retry(max_retries=2)
    async def get_candidate_users(self) -> list[DripUser]:
        """Active users who have not finished the program (coarse, store-side filter)."""
        query = f"""
            SELECT {USER_SELECT_COLUMNS}
            FROM users
            WHERE is_active = true
              AND program_week < %s
            ORDER BY id
        """
        rows = await fetch_all(query, (PROGRAM_WEEKS,))
        return [row_to_user(row) for row in rows]

    async def get_stats(self) -> dict[str, Any]:
        """Enrollment totals for the admin dashboard."""
        query = """
            SELECT
                COUNT(*) AS total_users,
                COUNT(*) FILTER (WHERE is_active) AS active_users,
                COUNT(*) FILTER (WHERE program_week >= %s) AS completed_users
            FROM users
        """
        row = await fetch_one(query, (PROGRAM_WEEKS,)) or {}

        total = row.get("total_users") or 0
        completed = row.get("completed_users") or 0
        return {
            "total_users": total,
            "active_users": row.get("active_users") or 0,
            "completed_users": completed,
            "completion_rate": round(completed / total * 100) if total else 0,
        }

    async def ping(self) -> bool:
        row = await fetch_one("SELECT 1 AS ok")
        return bool(row and row.get("ok") == 1)


drip_user_repository = DripUserRepository()
