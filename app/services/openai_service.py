# app/services/openai_service.py
"""
OpenAI Service for leadership coaching content.

Generates the welcome goal analysis, the weekly coaching challenge and the
weekly subject line. Every call retries transient API failures with
exponential backoff and falls back to templated, context-aware content so a
slow or failing API never leaves a user without their weekly email.
"""

import asyncio
import json
import re
from typing import Any

import openai
from openai import AsyncOpenAI
from pydantic import ValidationError

from app.config import settings
from app.features.drip_campaign.domain import (
    PROGRAM_WEEKS,
    WELCOME_WEEK,
    CoachingContent,
    EngagementLevel,
    GoalAction,
    LeadershipContext,
)
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

SUBJECT_QUOTES = re.compile(r"^[\"'](.*)[\"']$", re.DOTALL)


class OpenAIServiceError(Exception):
    """Raised when the OpenAI API cannot produce usable content."""

    def __init__(self, message: str, api_error: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.api_error = api_error
        self.recoverable = recoverable


def developmental_stage(week_number: int) -> str:
    if week_number <= 3:
        return "self-awareness"
    if week_number <= 8:
        return "skill application"
    return "integration and mastery"


def describe_context(context: LeadershipContext | None) -> str:
    """Render leadership context as prompt lines; empty string when nothing is known."""
    if context is None or context.is_empty():
        return ""

    lines = []
    if context.current_role:
        lines.append(f"- Role: {context.current_role}")
    if context.team_size:
        lines.append(f"- Team size: {context.team_size}")
    if context.industry:
        lines.append(f"- Industry: {context.industry}")
    if context.years_in_leadership is not None:
        lines.append(f"- Years in leadership: {context.years_in_leadership}")
    if context.work_environment:
        lines.append(f"- Work environment: {context.work_environment}")
    if context.organization_size:
        lines.append(f"- Organization size: {context.organization_size}")
    if context.leadership_challenges:
        lines.append(f"- Current challenges: {', '.join(context.leadership_challenges)}")
    return "\n".join(lines)


class OpenAIService:
    """
    Content generator backed by the OpenAI chat completions API.

    The client is created on first use so the service can be constructed
    (and fall back to templates) without an API key.
    """

    def __init__(self, client: AsyncOpenAI | None = None):
        self._client = client

    @property
    def client(self) -> AsyncOpenAI | None:
        if self._client is None and settings.OPENAI_API_KEY:
            self._client = AsyncOpenAI(
                api_key=settings.OPENAI_API_KEY,
                timeout=settings.OPENAI_TIMEOUT_SECONDS,
                max_retries=0,
            )
            logger.info(
                "OpenAI client initialized",
                model=settings.OPENAI_MODEL,
                timeout=settings.OPENAI_TIMEOUT_SECONDS,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None

    # ------------------------------------------------------------------
    # Prompts
    # ------------------------------------------------------------------

    def _get_system_message(self) -> str:
        return """### Role
You are Go Coach, a leadership development coach running a 12-week program.
You write short, specific, encouraging coaching notes grounded in evidence-based
leadership practice. Avoid generic business advice.

### Output Requirements
- Return ONLY valid JSON (no backticks, no prose)
- Structure:
{
  "encouragement": "2-3 sentences, personal and specific",
  "actions": [{"goal": "the goal text", "action": "30-60 minute concrete action"}],
  "goal_connection": "one sentence tying this week to their goals",
  "success_criteria": "one sentence describing how they will know it worked"
}
- Exactly one entry in "actions" per goal, in the same order as the goals
- Every action must be observable and completable within 7 days
"""

    def _build_user_message(
        self,
        goals: list[str],
        week_number: int,
        previous_action: str,
        context: LeadershipContext | None,
        engagement_level: EngagementLevel,
    ) -> str:
        goal_lines = "\n".join(f"{index}. {goal}" for index, goal in enumerate(goals, 1))
        context_block = describe_context(context)

        if week_number == WELCOME_WEEK:
            task = """### Task
This is the welcome email (week 1). Analyze their goals: name the underlying
drivers you see and reference their own phrasing. Then give a first action for
each goal that builds momentum and self-awareness through real-world practice."""
        else:
            task = f"""### Task
This is week {week_number} of {PROGRAM_WEEKS}. Current stage: {developmental_stage(week_number)}.
Acknowledge last week's action, then give a new action for each goal that builds
directly on it. The challenge must progress, not repeat last week.
Engagement level: {engagement_level}. Lower engagement calls for a shorter,
easier action; high engagement can take a stretch challenge."""

        message = f"""### Goals
{goal_lines}

### Previous action
{previous_action}
"""
        if context_block:
            message += f"""
### Leadership context
{context_block}
"""
        return f"{message}\n{task}"

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def generate(
        self,
        goals: list[str],
        week_number: int,
        previous_action: str,
        context: LeadershipContext | None = None,
        engagement_level: EngagementLevel = "new_user",
    ) -> CoachingContent:
        """
        Generate coaching content for one email.

        Returns templated fallback content (is_fallback=True) when the API is
        not configured or keeps failing after retries.
        """
        if not self.client:
            logger.warning("OpenAI not configured, using fallback content", week_number=week_number)
            return self._fallback_content(goals, week_number, previous_action, context)

        try:
            raw = await self._call_openai_with_retry(
                [
                    {"role": "system", "content": self._get_system_message()},
                    {
                        "role": "user",
                        "content": self._build_user_message(
                            goals, week_number, previous_action, context, engagement_level
                        ),
                    },
                ],
                json_response=True,
                max_tokens=settings.OPENAI_MAX_TOKENS,
            )
            content = self._parse_content(raw, goals)

        except OpenAIServiceError as e:
            logger.warning(
                "Coaching content generation failed, using fallback",
                week_number=week_number,
                error=str(e),
                api_error=e.api_error,
            )
            return self._fallback_content(goals, week_number, previous_action, context)

        logger.info(
            "Coaching content generated",
            week_number=week_number,
            action_count=len(content.actions),
            engagement_level=engagement_level,
        )
        return content

    async def generate_subject_line(self, week_number: int, action_text: str) -> str:
        fallback = f"Week {week_number}: Your Leadership Challenge"
        if not self.client:
            return fallback

        prompt = f"""Write one email subject line for week {week_number} of a {PROGRAM_WEEKS}-week leadership coaching program.
This week's action: {action_text}
Keep it to 6-8 words, professional but engaging, no generic business jargon.
Reply with the subject line only."""

        try:
            raw = await self._call_openai_with_retry(
                [{"role": "user", "content": prompt}], json_response=False, max_tokens=50
            )
        except OpenAIServiceError as e:
            logger.warning("Subject line generation failed, using fallback", error=str(e))
            return fallback

        subject = SUBJECT_QUOTES.sub(r"\1", raw.strip()).strip()
        return subject or fallback

    # ------------------------------------------------------------------
    # API call and parsing
    # ------------------------------------------------------------------

    async def _call_openai_with_retry(
        self, messages: list[dict[str, str]], json_response: bool, max_tokens: int
    ) -> str:
        """
        Call OpenAI API with retry logic for transient failures.

        Attempts and backoff share one OPENAI_DEADLINE_SECONDS budget, so the
        caller gets an answer or an OpenAIServiceError before its own timeout.
        """
        deadline = settings.OPENAI_DEADLINE_SECONDS
        try:
            return await asyncio.wait_for(
                self._request_with_retry(messages, json_response, max_tokens), timeout=deadline
            )
        except TimeoutError as e:
            logger.error("OpenAI API call exceeded its deadline", deadline_seconds=deadline)
            raise OpenAIServiceError(
                f"OpenAI API did not answer within {deadline}s", api_error="deadline exceeded"
            ) from e

    async def _request_with_retry(
        self, messages: list[dict[str, str]], json_response: bool, max_tokens: int
    ) -> str:
        last_error = None
        max_retries = settings.OPENAI_MAX_RETRIES

        for attempt in range(max_retries):
            try:
                kwargs: dict[str, Any] = {
                    "model": settings.OPENAI_MODEL,
                    "messages": messages,
                    "max_tokens": max_tokens,
                    "temperature": settings.OPENAI_TEMPERATURE,
                }
                if json_response:
                    kwargs["response_format"] = {"type": "json_object"}

                response = await self.client.chat.completions.create(**kwargs)

                if not response.choices or not response.choices[0].message.content:
                    raise OpenAIServiceError("Empty response from OpenAI API")

                result = response.choices[0].message.content.strip()

                logger.debug(
                    "OpenAI API call successful",
                    attempt=attempt + 1,
                    response_length=len(result),
                    usage_tokens=response.usage.total_tokens if response.usage else 0,
                )
                return result

            except openai.RateLimitError as e:
                last_error = e
                logger.warning("OpenAI rate limit hit, retrying", attempt=attempt + 1, error=str(e))

            except openai.APITimeoutError as e:
                last_error = e
                logger.warning("OpenAI API timeout, retrying", attempt=attempt + 1, error=str(e))

            except openai.APIStatusError as e:
                last_error = e
                # Don't retry on client errors (4xx)
                if 400 <= e.status_code < 500:
                    logger.error("OpenAI client error (not retrying)", error=str(e))
                    break
                logger.warning("OpenAI API error, retrying", attempt=attempt + 1, error=str(e))

            except (openai.APIError, OpenAIServiceError) as e:
                last_error = e
                logger.warning("OpenAI API error, retrying", attempt=attempt + 1, error=str(e))

            if attempt < max_retries - 1:
                await asyncio.sleep(min(2**attempt, 30))

        logger.error(
            "OpenAI API call failed after all retries",
            max_retries=max_retries,
            final_error=str(last_error),
        )
        raise OpenAIServiceError(
            f"OpenAI API failed after {max_retries} attempts",
            api_error=str(last_error),
        ) from last_error

    def _parse_content(self, raw_result: str, goals: list[str]) -> CoachingContent:
        try:
            data = json.loads(raw_result)
        except json.JSONDecodeError as e:
            logger.error("OpenAI returned invalid JSON", raw_result=raw_result[:200])
            raise OpenAIServiceError("OpenAI returned invalid JSON", api_error=str(e)) from e

        if not isinstance(data, dict):
            raise OpenAIServiceError("OpenAI returned an unexpected JSON shape")

        actions = data.get("actions")
        if not isinstance(actions, list) or not actions:
            raise OpenAIServiceError("OpenAI response is missing actions")

        # Single-action answers apply to every goal
        if len(actions) == 1 and len(goals) > 1 and isinstance(actions[0], dict):
            actions = [{"goal": goal, "action": actions[0].get("action")} for goal in goals]

        try:
            return CoachingContent(
                encouragement=data.get("encouragement")
                or "Your commitment to growing as a leader shows.",
                actions=[GoalAction.model_validate(item) for item in actions],
                goal_connection=data.get("goal_connection")
                or "Each week builds toward achieving your leadership vision.",
                success_criteria=data.get("success_criteria"),
            )
        except ValidationError as e:
            raise OpenAIServiceError("OpenAI response failed validation", api_error=str(e)) from e

    def _fallback_content(
        self,
        goals: list[str],
        week_number: int,
        previous_action: str,
        context: LeadershipContext | None,
    ) -> CoachingContent:
        """Templated content that still reflects the user's goals, week and context."""
        context = context or LeadershipContext()
        team = f" with your team of {context.team_size}" if context.team_size else ""
        role = f" as {context.current_role}" if context.current_role else ""
        stage = developmental_stage(week_number)

        if week_number == WELCOME_WEEK:
            encouragement = (
                f"Your goals show a clear picture of the leader you want to become{role}. "
                "Naming them is the first step, and the next twelve weeks turn them into habits."
            )
            template = (
                "Spend 30 minutes writing down what '{goal}' would look like in practice{team}, "
                "then share one concrete commitment with a colleague you trust."
            )
            success = "You have written a specific picture of success and said it out loud to someone."
        elif stage == "self-awareness":
            encouragement = (
                f"Thank you for working on last week's action: {previous_action}. "
                "Noticing your own patterns is where lasting change starts."
            )
            template = (
                "Notice three moments this week where '{goal}' was tested{team}. "
                "Write down what you did and what you would do differently."
            )
            success = "You can name one pattern in how you lead that you had not seen before."
        elif stage == "skill application":
            encouragement = (
                "You are past the foundation stage and into deliberate practice. "
                "Build on what you learned from last week's action."
            )
            template = (
                "Pick one upcoming meeting or conversation{team} where you can practise "
                "'{goal}' on purpose, and ask for specific feedback afterwards."
            )
            success = "Someone else has noticed the change and told you what they saw."
        else:
            encouragement = (
                f"Week {week_number} is about making your progress stick. "
                "Look at how far you have come since week one."
            )
            template = (
                "Teach one habit behind '{goal}' to someone{team}, "
                "and agree how you will both keep it going after this program."
            )
            success = "The habit continues without you having to plan for it."

        actions = [
            GoalAction(goal=goal, action=template.format(goal=goal, team=team))
            for goal in goals
        ]

        return CoachingContent(
            encouragement=encouragement,
            actions=actions,
            goal_connection="Each week builds toward achieving your leadership vision.",
            success_criteria=success,
            is_fallback=True,
        )

    async def health_check(self) -> dict[str, Any]:
        return {
            "healthy": True,
            "service": "openai_service",
            "configured": bool(settings.OPENAI_API_KEY),
            "model": settings.OPENAI_MODEL,
            "max_retries": settings.OPENAI_MAX_RETRIES,
        }


# Singleton instance for application use
openai_service = OpenAIService()
