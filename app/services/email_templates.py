"""
HTML rendering for drip emails.

Every generated or user-supplied string is escaped before it is placed in
the markup. The open-tracking pixel and click-tracking link both point back
at this service and are keyed by the email history record id.
"""

from html import escape
from urllib.parse import quote

from app.config import settings
from app.features.drip_campaign.domain import PROGRAM_WEEKS, CoachingContent, DripUser

WELCOME_SUBJECT = "Welcome to Your Leadership Journey!"

_STYLE_BODY = "margin: 0; padding: 0; font-family: Georgia, 'Times New Roman', serif; background-color: #f5f5f5; line-height: 1.6;"
_STYLE_CARD = "max-width: 600px; margin: 0 auto; background-color: #ffffff; border-radius: 8px; box-shadow: 0 2px 8px rgba(0,0,0,0.1); overflow: hidden;"
_STYLE_HEADER = "background: linear-gradient(135deg, #2c3e50 0%, #3498db 100%); color: white; padding: 40px 30px; text-align: center;"
_STYLE_TEXT = "margin: 0 0 20px 0; font-family: Arial, Helvetica, sans-serif; font-size: 16px; color: #34495e;"
_STYLE_SECTION = "padding: 25px; margin: 30px 0; border-radius: 4px; border-left: 4px solid {color}; background-color: {background};"
_STYLE_SECTION_TITLE = "margin: 0 0 15px 0; font-family: Georgia, serif; font-size: 20px; font-weight: normal; color: {color};"


def display_name(email: str) -> str:
    """'jane.doe@example.com' -> 'Jane'."""
    first = email.split("@")[0].split(".")[0]
    return first[:1].upper() + first[1:] if first else "there"


def tracking_pixel_url(record_id: int | None) -> str | None:
    if record_id is None:
        return None
    return f"{settings.PUBLIC_BASE_URL.rstrip('/')}/api/email/track/{record_id}"


def tracked_link(record_id: int | None, target: str) -> str:
    if record_id is None:
        return target
    base = settings.PUBLIC_BASE_URL.rstrip("/")
    return f"{base}/api/email/click/{record_id}?url={quote(target, safe='')}"


def _section(title: str, body_html: str, color: str, background: str) -> str:
    return f"""
              <div style="{_STYLE_SECTION.format(color=color, background=background)}">
                <h3 style="{_STYLE_SECTION_TITLE.format(color=color)}">{escape(title)}</h3>
                {body_html}
              </div>"""


def _actions_html(content: CoachingContent) -> str:
    if len(content.actions) == 1:
        return f'<p style="{_STYLE_TEXT}">{escape(content.actions[0].action)}</p>'
    return "".join(
        f'<p style="{_STYLE_TEXT}"><strong>{escape(item.goal)}:</strong><br>{escape(item.action)}</p>'
        for item in content.actions
    )


def _layout(
    user: DripUser, title: str, header_line: str, body_html: str, week_number: int, record_id: int | None
) -> str:
    pixel = tracking_pixel_url(record_id)
    pixel_html = (
        f'<img src="{escape(pixel)}" width="1" height="1" alt="" style="display: block;">'
        if pixel
        else ""
    )
    home_link = escape(tracked_link(record_id, settings.PUBLIC_BASE_URL))

    return f"""<!DOCTYPE html>
<html>
  <head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>{escape(title)}</title>
  </head>
  <body style="{_STYLE_BODY}">
    <div style="background-color: #f5f5f5; padding: 40px 20px;">
      <div style="{_STYLE_CARD}">
        <div style="{_STYLE_HEADER}">
          <h1 style="margin: 0; font-size: 32px; font-weight: normal; letter-spacing: 2px;">GO</h1>
          <p style="margin: 10px 0 0 0; font-size: 16px; opacity: 0.9;">{escape(header_line)}</p>
        </div>
        <div style="padding: 40px 30px;">
          {body_html}
          <div style="margin: 40px 0 20px 0; padding: 20px 0; border-top: 1px solid #ecf0f1;">
            <p style="{_STYLE_TEXT}">Your AI Leadership Coach</p>
          </div>
        </div>
        <div style="padding: 30px; background-color: #f8f9fa; border-top: 1px solid #e9ecef; text-align: center;">
          <p style="margin: 0; color: #6c757d; font-family: Arial, sans-serif; font-size: 14px;">
            Week {week_number} of {PROGRAM_WEEKS} &bull; <a href="{home_link}" style="color: #3498db;">Go Leadership</a>
          </p>
          <p style="margin: 10px 0 0 0; color: #adb5bd; font-family: Arial, sans-serif; font-size: 12px;">
            This email was sent to {escape(user.email)}
          </p>
        </div>
      </div>
    </div>
    {pixel_html}
  </body>
</html>
"""


def render_welcome_email(user: DripUser, content: CoachingContent, record_id: int | None = None) -> str:
    name = escape(display_name(user.email))
    body = f"""
          <h2 style="margin: 0 0 25px 0; font-size: 28px; color: #2c3e50; font-weight: normal;">
            Welcome to Your Leadership Transformation, {name}
          </h2>
          <p style="{_STYLE_TEXT}">I've reviewed your leadership goals and I'm excited about the journey ahead.</p>
          {_section("My Analysis of Your Goals", f'<p style="{_STYLE_TEXT}">{escape(content.encouragement)}</p>', "#e67e22", "#f8f9fa")}
          {_section("Your Week 1 Action Items", _actions_html(content), "#d35400", "#fff3cd")}
          <p style="{_STYLE_TEXT}">{escape(content.goal_connection)}</p>
          <p style="{_STYLE_TEXT}">Each Monday you'll receive a new challenge built on the one before.</p>"""

    return _layout(user, WELCOME_SUBJECT, "Your Leadership Development Journey", body, 1, record_id)


def render_weekly_email(
    user: DripUser, week_number: int, content: CoachingContent, record_id: int | None = None
) -> str:
    name = escape(display_name(user.email))
    percent = round(week_number / PROGRAM_WEEKS * 100)

    sections = [
        _section(
            "Progress Recognition",
            f'<p style="{_STYLE_TEXT}">{escape(content.encouragement)}</p>',
            "#27ae60",
            "#e8f5e8",
        ),
        _section("This Week's Challenge", _actions_html(content), "#d35400", "#fff3cd"),
        _section(
            "Connection to Your Vision",
            f'<p style="{_STYLE_TEXT}">{escape(content.goal_connection)}</p>',
            "#3498db",
            "#f0f4ff",
        ),
    ]
    if content.success_criteria:
        sections.append(
            _section(
                "How You'll Know It Worked",
                f'<p style="{_STYLE_TEXT}">{escape(content.success_criteria)}</p>',
                "#8e44ad",
                "#f5eef8",
            )
        )

    body = f"""
          <h2 style="margin: 0 0 25px 0; font-size: 28px; color: #2c3e50; font-weight: normal;">Hello {name},</h2>
          {''.join(sections)}
          <div style="background-color: #f3f4f6; border-radius: 8px; padding: 2px; margin: 20px 0;">
            <div style="background: #27ae60; height: 8px; border-radius: 6px; width: {percent}%;"></div>
          </div>
          <p style="{_STYLE_TEXT} text-align: center;">Progress: Week {week_number} of {PROGRAM_WEEKS} ({percent}% complete)</p>"""

    return _layout(
        user,
        f"Week {week_number}: Your Leadership Development Continues",
        f"Week {week_number} of {PROGRAM_WEEKS}",
        body,
        week_number,
        record_id,
    )
