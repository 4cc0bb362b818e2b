"""Data-driven lookup tables used by the pipeline's deterministic passes.

All classification rules live here as data so that adding a service or a
capability is a table edit, not a code change:

  TRIGGER_ONLY_IDS            — library ids that may only ever play the trigger role
  LIBRARY_COVERED_KEYWORDS    — custom requirements the library already covers
  LIBRARY_KEYWORD_CAPABILITIES— keyword → capability id, for the advisory check
  ENDPOINT_SERVICES           — API endpoint substring → (service, credential type)
  CREDENTIAL_FIELD_PATTERNS   — config field names that hold a secret
  RESOURCE_FIELD_PATTERNS     — per service: field-name pattern → resource type
"""

from __future__ import annotations

import re
from dataclasses import dataclass


TRIGGER_ONLY_IDS: frozenset[str] = frozenset({
    "manual-trigger",
    "scheduled-time-trigger",
    "webhook-trigger",
    "new-form-submission",
    "new-email-received",
    "new-row-in-google-sheet",
    "new-message-in-slack",
    "new-discord-message",
    "new-github-issue",
    "file-uploaded",
})


# Matched case-insensitively as substrings of a custom requirement.
LIBRARY_COVERED_KEYWORDS: tuple[str, ...] = (
    "openai",
    "chatgpt",
    "gpt",
    "ai content",
    "ai-generated",
    "generate content",
    "summarize",
    "summarise",
    "summary",
    "classify",
    "sentiment",
    "translate",
    "extract entities",
    "send email",
    "slack",
    "notion",
    "discord",
    "sms",
    "post to x",
    "tweet",
    "text to speech",
    "speech to text",
)


LIBRARY_KEYWORD_CAPABILITIES: tuple[tuple[str, str], ...] = (
    ("summar", "generate-summary-with-ai"),
    ("classif", "classify-text"),
    ("sentiment", "sentiment-analysis"),
    ("translat", "translate-text"),
    ("entit", "extract-entities"),
    ("generate image", "generate-image"),
    ("text to speech", "text-to-speech"),
    ("speech to text", "speech-to-text"),
    ("transcri", "speech-to-text"),
    ("email", "send-email"),
    ("slack", "post-to-slack-channel"),
    ("discord", "send-discord-message"),
    ("sms", "send-sms-via-twilio"),
    ("tweet", "post-to-x"),
    ("notion", "create-notion-page"),
    ("trello", "create-trello-card"),
    ("airtable", "update-airtable-record"),
    ("calendar", "create-calendar-event"),
    ("sort", "sort-data"),
    ("group by", "group-data"),
    ("aggregat", "aggregate-data"),
    ("delay", "delay-execution"),
    ("wait", "delay-execution"),
    ("ai content", "generate-ai-content"),
    ("chatgpt", "generate-ai-content"),
    ("openai", "generate-ai-content"),
)


@dataclass(frozen=True)
class ServiceMatch:
    service: str
    credential_type: str  # oauth | api_token | api_key_and_token


# Ordered: the first matching substring wins, so specific Google hosts precede
# the generic googleapis.com entry.
ENDPOINT_SERVICES: tuple[tuple[str, ServiceMatch], ...] = (
    ("sheets.googleapis.com", ServiceMatch("google-sheets", "oauth")),
    ("gmail.googleapis.com", ServiceMatch("google-gmail", "oauth")),
    ("www.googleapis.com/calendar", ServiceMatch("google-calendar", "oauth")),
    ("www.googleapis.com/drive", ServiceMatch("google-drive", "oauth")),
    ("forms.googleapis.com", ServiceMatch("google-forms", "oauth")),
    ("googleapis.com", ServiceMatch("google", "oauth")),
    ("slack.com/api", ServiceMatch("slack", "oauth")),
    ("api.github.com", ServiceMatch("github", "oauth")),
    ("api.notion.com", ServiceMatch("notion", "oauth")),
    ("api.airtable.com", ServiceMatch("airtable", "oauth")),
    ("api.trello.com", ServiceMatch("trello", "oauth")),
    ("api.openai.com", ServiceMatch("openai", "api_token")),
    ("api.sendgrid.com", ServiceMatch("sendgrid", "api_token")),
    ("api.twilio.com", ServiceMatch("twilio", "api_key_and_token")),
    ("api.stripe.com", ServiceMatch("stripe", "api_token")),
    ("discord.com/api", ServiceMatch("discord", "api_token")),
    ("discordapp.com/api", ServiceMatch("discord", "api_token")),
    ("api.twitter.com", ServiceMatch("twitter", "api_token")),
    ("api.x.com", ServiceMatch("twitter", "api_token")),
    ("api.paypal.com", ServiceMatch("paypal", "oauth")),
    ("myshopify.com/admin/api", ServiceMatch("shopify", "oauth")),
    ("api.hubapi.com", ServiceMatch("hubspot", "oauth")),
    ("api.hubspot.com", ServiceMatch("hubspot", "oauth")),
    ("app.asana.com/api", ServiceMatch("asana", "oauth")),
    ("atlassian.net/rest/api", ServiceMatch("jira", "oauth")),
)


SERVICE_DISPLAY_NAMES: dict[str, str] = {
    "google-sheets": "Google Sheets",
    "google-gmail": "Gmail",
    "google-calendar": "Google Calendar",
    "google-drive": "Google Drive",
    "google-forms": "Google Forms",
    "google": "Google",
    "slack": "Slack",
    "github": "GitHub",
    "notion": "Notion",
    "airtable": "Airtable",
    "trello": "Trello",
    "openai": "OpenAI",
    "sendgrid": "SendGrid",
    "twilio": "Twilio",
    "stripe": "Stripe",
    "discord": "Discord",
    "twitter": "X",
    "paypal": "PayPal",
    "shopify": "Shopify",
    "hubspot": "HubSpot",
    "asana": "Asana",
    "jira": "Jira",
}


# Normalised field name (lowercase, separators removed) is tested against each.
CREDENTIAL_FIELD_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p)
    for p in (
        r"apikey",
        r"apisecret",
        r"token$",
        r"^token",
        r"accesstoken",
        r"refreshtoken",
        r"bearer",
        r"secret",
        r"password",
        r"passwd",
        r"accesskey",
        r"clientsecret",
        r"privatekey",
        r"credential",
        r"authheader",
        r"authorization",
    )
)


RESOURCE_FIELD_PATTERNS: dict[str, tuple[tuple[re.Pattern[str], str], ...]] = {
    "slack": (
        (re.compile(r"channel"), "channel"),
    ),
    "google-sheets": (
        (re.compile(r"spreadsheet"), "spreadsheet"),
        (re.compile(r"sheet(name|id)?$|^sheet|tab"), "sheet"),
    ),
    "google-calendar": (
        (re.compile(r"calendar"), "calendar"),
    ),
    "google-drive": (
        (re.compile(r"folder"), "folder"),
    ),
    "google-forms": (
        (re.compile(r"form"), "form"),
    ),
    "discord": (
        (re.compile(r"channel"), "channel"),
        (re.compile(r"guild|server"), "guild"),
    ),
    "github": (
        (re.compile(r"repo"), "repository"),
    ),
    "notion": (
        (re.compile(r"database"), "database"),
        (re.compile(r"page"), "page"),
    ),
    "airtable": (
        (re.compile(r"base"), "base"),
        (re.compile(r"table"), "table"),
    ),
    "trello": (
        (re.compile(r"board"), "board"),
        (re.compile(r"list"), "list"),
    ),
}


def _normalise_field_name(name: str) -> str:
    return re.sub(r"[^a-z0-9]", "", name.lower())


def is_credential_field(name: str) -> bool:
    """True when a config field name looks like it holds a secret."""
    norm = _normalise_field_name(name)
    return any(p.search(norm) for p in CREDENTIAL_FIELD_PATTERNS)


def detect_service(code: str) -> ServiceMatch | None:
    """Return the service whose API endpoint appears in code, or None."""
    if not code:
        return None
    lowered = code.lower()
    for needle, match in ENDPOINT_SERVICES:
        if needle in lowered:
            return match
    return None


def resource_type_for(service: str, field_name: str) -> str | None:
    """Resource type a field selects for service (e.g. slack/channelId → channel)."""
    norm = _normalise_field_name(field_name)
    for pattern, resource_type in RESOURCE_FIELD_PATTERNS.get(service, ()):
        if pattern.search(norm):
            return resource_type
    return None


def covered_keyword(text: str) -> str | None:
    """First library-covered keyword found in text, or None."""
    lowered = text.lower()
    for kw in LIBRARY_COVERED_KEYWORDS:
        if kw in lowered:
            return kw
    return None


def similar_library_capability(text: str) -> str | None:
    """Library capability id that text appears to describe, or None."""
    lowered = text.lower()
    for kw, capability_id in LIBRARY_KEYWORD_CAPABILITIES:
        if kw in lowered:
            return capability_id
    return None


def connection_field_key(service: str) -> str:
    """Config key for a service's connection field, e.g. google_sheets_connection."""
    return f"{service.replace('-', '_')}_connection"
