from app.features.drip_campaign.domain import CoachingContent, DripUser, GoalAction
from app.services.email_templates import (
    display_name,
    render_weekly_email,
    render_welcome_email,
    tracked_link,
)


def _content(action="Hold a 1:1 <b>today</b>"):
    return CoachingContent(
        encouragement="Nice work & keep going",
        actions=[GoalAction(goal="Coach", action=action)],
        goal_connection="Coaching compounds.",
        success_criteria="Your report asks for the next one.",
    )


def test_display_name_from_email():
    assert display_name("jane.doe@example.com") == "Jane"
    assert display_name("@example.com") == "there"


def test_weekly_email_escapes_content_and_shows_progress():
    user = DripUser(id=7, email="sam@example.com", goals=["Coach"], program_week=5)

    html = render_weekly_email(user, 6, _content(), record_id=42)

    assert "Hold a 1:1 &lt;b&gt;today&lt;/b&gt;" in html
    assert "<b>today</b>" not in html
    assert "Nice work &amp; keep going" in html
    assert "Week 6 of 12 (50% complete)" in html
    assert "/api/email/track/42" in html


def test_welcome_email_without_record_has_no_pixel():
    user = DripUser(id=7, email="sam@example.com", goals=["Coach"])

    html = render_welcome_email(user, _content("Write your vision"))

    assert "Welcome to Your Leadership Transformation, Sam" in html
    assert "Write your vision" in html
    assert "/api/email/track/" not in html


def test_tracked_link_wraps_target():
    assert tracked_link(None, "https://example.com") == "https://example.com"
    assert tracked_link(3, "/dashboard").endswith("/api/email/click/3?url=%2Fdashboard")
