"""
Engagement level from recent email analytics.

Feeds the content generator so the weekly challenge can be pitched at the
right difficulty.
"""

from app.features.drip_campaign.domain import EmailRecord, EngagementLevel

RECENT_EMAIL_WINDOW = 3


def calculate_engagement_level(recent_records: list[EmailRecord]) -> EngagementLevel:
    """Classify engagement from the newest sent records (newest first)."""
    records = recent_records[:RECENT_EMAIL_WINDOW]
    if not records:
        return "new_user"

    total = len(records)
    open_rate = sum(1 for record in records if record.opened_at) / total
    clicks_per_email = sum(record.click_count or 0 for record in records) / total

    if open_rate >= 0.8 and clicks_per_email >= 0.5:
        return "highly_engaged"
    if open_rate >= 0.6:
        return "engaged"
    if open_rate >= 0.3:
        return "moderately_engaged"
    return "low_engagement"
