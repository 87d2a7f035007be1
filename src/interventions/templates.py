"""
Message templates for retention interventions.

Pure Python, no I/O. Each intervention type has one subject/body template
with ``{{placeholder}}`` fields filled from member and score context.
Unknown placeholders render as empty strings so a template edit can never
break a daily run.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger("retain.interventions.templates")

PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")


@dataclass(frozen=True)
class MessageTemplate:
    """Subject and body for one intervention type."""

    intervention_type: str
    subject: str
    body: str
    sms_body: str


@dataclass(frozen=True)
class RenderedMessage:
    subject: str | None
    body: str


# =============================================================================
# Template Definitions
# =============================================================================


TEMPLATE_REGISTRY: dict[str, MessageTemplate] = {
    "ONBOARDING_NUDGE": MessageTemplate(
        intervention_type="ONBOARDING_NUDGE",
        subject="Let's get your first few sessions booked, {{firstName}}",
        body=(
            "Hi {{firstName}},\n\n"
            "Welcome to {{gymName}}! The first few weeks are where the habit "
            "gets built, and we'd love to help you find a routine that sticks.\n\n"
            "Reply to this email and your coach will set up a plan that fits "
            "your week.\n\n"
            "See you soon,\nThe {{gymName}} team"
        ),
        sms_body=(
            "Hi {{firstName}}, welcome to {{gymName}}! Want help booking your "
            "first sessions? Reply YES and your coach will be in touch."
        ),
    ),
    "WIN_BACK": MessageTemplate(
        intervention_type="WIN_BACK",
        subject="We've missed you at {{gymName}}, {{firstName}}",
        body=(
            "Hi {{firstName}},\n\n"
            "It's been {{daysSinceLastVisit}} days since we last saw you. "
            "Life gets busy, and that's fine. Coming back is easier than it "
            "feels.\n\n"
            "Pick any class this week and we'll make sure someone is there to "
            "welcome you back.\n\n"
            "The {{gymName}} team"
        ),
        sms_body=(
            "Hi {{firstName}}, it's been {{daysSinceLastVisit}} days! We'd love "
            "to see you back at {{gymName}} this week."
        ),
    ),
    "COACH_CHECK_IN": MessageTemplate(
        intervention_type="COACH_CHECK_IN",
        subject="Quick check-in from your coach",
        body=(
            "Hi {{firstName}},\n\n"
            "Just checking in to see how training is going. Is there anything "
            "we can adjust to make your sessions work better for you?\n\n"
            "Hit reply and let me know.\n\n"
            "Your coach at {{gymName}}"
        ),
        sms_body=(
            "Hi {{firstName}}, your coach at {{gymName}} here. How is training "
            "going? Anything we can help with?"
        ),
    ),
    "HABIT_REINFORCEMENT": MessageTemplate(
        intervention_type="HABIT_REINFORCEMENT",
        subject="Keep the momentum going, {{firstName}}",
        body=(
            "Hi {{firstName}},\n\n"
            "You've put in {{recentVisits}} sessions over the last month. "
            "Consistency is what turns effort into results, so let's lock in "
            "a regular slot for the weeks ahead.\n\n"
            "Your coach can help you plan a schedule that fits.\n\n"
            "The {{gymName}} team"
        ),
        sms_body=(
            "Hi {{firstName}}, nice work on your recent sessions at {{gymName}}. "
            "Want help locking in a regular training slot?"
        ),
    ),
}


# =============================================================================
# Rendering
# =============================================================================


def render_text(template: str, context: dict[str, Any]) -> str:
    """Replace ``{{name}}`` placeholders with values from context."""

    def substitute(match: re.Match) -> str:
        value = context.get(match.group(1))
        return "" if value is None else str(value)

    return PLACEHOLDER.sub(substitute, template)


def build_context(
    first_name: str,
    gym_name: str = "your gym",
    days_since_last_visit: int | None = None,
    recent_visits: int | None = None,
    score: int | None = None,
) -> dict[str, Any]:
    return {
        "firstName": first_name or "there",
        "gymName": gym_name,
        "daysSinceLastVisit": days_since_last_visit,
        "recentVisits": recent_visits,
        "commitmentScore": score,
    }


def render_message(
    intervention_type: str, channel: str, context: dict[str, Any]
) -> RenderedMessage:
    """Render the template for an intervention type and delivery channel.

    SMS messages carry no subject.

    Raises:
        KeyError: If no template exists for the intervention type.
    """
    template = TEMPLATE_REGISTRY[intervention_type]
    if channel == "SMS":
        return RenderedMessage(subject=None, body=render_text(template.sms_body, context))
    return RenderedMessage(
        subject=render_text(template.subject, context),
        body=render_text(template.body, context),
    )
