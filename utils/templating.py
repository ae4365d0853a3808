"""
Message template rendering — `{{placeholder}}` substitution.

Placeholders are filled from, lowest to highest precedence:
  1. the template's own default variables
  2. variables supplied with the job
  3. the recipient's contact fields (name, phone, email, company, position)

Unknown placeholders are left in place so a missing variable is visible in
the delivered text instead of silently vanishing.
"""
from __future__ import annotations

import re
from typing import Optional

from models.schemas import MessageTemplate, Recipient

PLACEHOLDER = re.compile(r"\{\{\s*([\w.-]+)\s*\}\}")

CONTACT_FIELDS = ("name", "phone", "email", "company", "position")


def _normalize_key(key: str) -> str:
    """Accept both 'name' and '{{name}}' as variable keys."""
    key = key.strip()
    if key.startswith("{{") and key.endswith("}}"):
        key = key[2:-2].strip()
    return key


def render(text: str, values: dict[str, str]) -> str:
    """Replace every known `{{key}}` in text with values[key]."""
    if not text or "{{" not in text:
        return text
    normalized = {_normalize_key(k): str(v) for k, v in values.items()}

    def replacer(match: re.Match) -> str:
        return normalized.get(match.group(1), match.group(0))

    return PLACEHOLDER.sub(replacer, text)


def build_values(
    recipient: Optional[Recipient] = None,
    variables: Optional[dict[str, str]] = None,
    template: Optional[MessageTemplate] = None,
) -> dict[str, str]:
    values: dict[str, str] = {}
    if template:
        values.update({_normalize_key(k): v for k, v in template.variables.items()})
    if variables:
        values.update({_normalize_key(k): v for k, v in variables.items()})
    if recipient:
        for field in CONTACT_FIELDS:
            values[field] = getattr(recipient, field) or ""
    return values


def render_message(
    body: str,
    recipient: Optional[Recipient] = None,
    variables: Optional[dict[str, str]] = None,
    template: Optional[MessageTemplate] = None,
) -> str:
    """Render a message body for one recipient."""
    return render(body, build_values(recipient, variables, template))
