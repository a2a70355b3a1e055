# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Message templates and tone validation for parent-facing notifications.

Templates use a small Handlebars-like syntax:

    {{name}}                      variable substitution
    {{#if name}}...{{/if}}        block kept only when ``name`` is truthy
    {{#each items}}{{this}}{{/each}}  block repeated per list item

Parent messages must avoid blame, performance comparison, alarm words,
financial shaming and technical jargon. ``validate_message`` scores a text
against these rules and ``sanitize_message`` rewrites the phrases that have
an approved alternative.

Usage:
    from src.core.notifications.templates import get_default_catalog, render_template

    template = get_default_catalog().get("absence_notice")
    rendered = render_template(template, {"student_name": "Amara", "date": "Monday"})
    rendered.missing_variables  # ['school_name']
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from src.core.config.yaml_loader import YAMLLoadError, deep_merge, load_yaml, load_yaml_directory
from src.core.notifications.errors import TemplateRenderError
from src.core.notifications.models import MessageCategory

logger = logging.getLogger(__name__)


class PhraseGroup(str, Enum):
    BLAME = "blame"
    PERFORMANCE = "performance"
    ALARMING = "alarming"
    FINANCIAL = "financial"
    TECHNICAL = "technical"


FORBIDDEN_PHRASES: dict[PhraseGroup, tuple[str, ...]] = {
    PhraseGroup.BLAME: (
        "failed to",
        "did not bother",
        "neglected",
        "irresponsible",
        "careless",
        "lazy",
        "disappointing",
        "unacceptable",
        "inexcusable",
        "repeatedly",
        "constantly",
        "always late",
        "never on time",
    ),
    PhraseGroup.PERFORMANCE: (
        "struggling",
        "falling behind",
        "underperforming",
        "below average",
        "above average",
        "top of class",
        "bottom of class",
        "ranked",
        "compared to",
        "other students",
        "peers",
        "score",
        "grade",
        "percentage",
        "failed",
        "passed",
        "weak",
        "gifted",
        "slow",
        "fast learner",
        "behind",
    ),
    PhraseGroup.ALARMING: (
        "urgent",
        "critical",
        "serious concern",
        "worrying",
        "alarming",
        "troubling",
        "problematic",
        "issue",
        "problem",
        "concern",
        "warning",
        "alert",
        "immediately",
        "as soon as possible",
        "asap",
    ),
    PhraseGroup.FINANCIAL: (
        "overdue",
        "outstanding balance",
        "unpaid",
        "debt",
        "owe",
        "payment required",
        "penalty",
    ),
    PhraseGroup.TECHNICAL: (
        "ai",
        "artificial intelligence",
        "algorithm",
        "automated",
        "system generated",
        "diagnostic",
        "analytics",
        "metrics",
    ),
}

# Groups a category may legitimately use.
CATEGORY_EXEMPTIONS: dict[MessageCategory, frozenset[PhraseGroup]] = {
    MessageCategory.EMERGENCY: frozenset({PhraseGroup.ALARMING}),
}

APPROVED_ALTERNATIVES: dict[str, str] = {
    "failed to attend": "was not present",
    "did not show up": "was not in class",
    "missed school": "was absent",
    "skipped": "was not recorded as present",
    "urgent": "please note",
    "immediately": "at your earliest convenience",
    "critical": "important",
    "warning": "notice",
    "alert": "update",
    "concern": "update",
    "problem": "situation",
    "issue": "matter",
    "struggling": "working on",
    "behind": "focusing on",
    "weak in": "developing skills in",
    "failed": "is continuing to work on",
    "poor performance": "current focus area",
}

APPROVED_OPENINGS = ("Dear Parent/Guardian,", "Good morning,", "Good afternoon,", "Hello,")
APPROVED_CLOSINGS = ("Thank you.", "Warm regards,", "Best regards,", "Kind regards,")

_PLACEHOLDER = re.compile(r"{{\s*([A-Za-z_][\w]*)\s*}}")
_IF_BLOCK = re.compile(r"{{#if\s+(\w+)\s*}}(.*?){{/if}}", re.DOTALL)
_EACH_BLOCK = re.compile(r"{{#each\s+(\w+)\s*}}(.*?){{/each}}", re.DOTALL)
_THIS = re.compile(r"{{\s*this\s*}}")
_EXTRA_BLANK_LINES = re.compile(r"\n{3,}")
_SENTENCE_SPLIT = re.compile(r"[.!?]+")


def _phrase_pattern(phrase: str) -> re.Pattern[str]:
    return re.compile(rf"\b{re.escape(phrase)}\b", re.IGNORECASE)


_FORBIDDEN_PATTERNS: list[tuple[PhraseGroup, str, re.Pattern[str]]] = [
    (group, phrase, _phrase_pattern(phrase))
    for group, phrases in FORBIDDEN_PHRASES.items()
    for phrase in phrases
]

# Longest first so "failed to attend" wins over "failed"
_ALTERNATIVE_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (_phrase_pattern(phrase), replacement)
    for phrase, replacement in sorted(
        APPROVED_ALTERNATIVES.items(), key=lambda item: len(item[0]), reverse=True
    )
]


@dataclass(frozen=True)
class TemplateVariable:
    key: str
    label: str = ""
    required: bool = True
    example: str = ""


@dataclass(frozen=True)
class MessageTemplate:
    """A named, approved message template.

    Attributes:
        id: Template identifier.
        name: Display name.
        category: Message category the template belongs to.
        subject: Subject template.
        body: Body template.
        variables: Declared variables, in declaration order.
        tone: Tone guidance (neutral, warm, formal).
        max_length: Recommended maximum rendered body length.
        action_required: Whether the template asks the guardian to act.
        urgency_prefix: Prefix prepended to the rendered subject.
    """

    id: str
    name: str
    category: MessageCategory
    subject: str
    body: str
    variables: tuple[TemplateVariable, ...] = ()
    tone: str = "neutral"
    max_length: int = 500
    action_required: bool = False
    urgency_prefix: str = ""

    @property
    def required_keys(self) -> list[str]:
        return [variable.key for variable in self.variables if variable.required]

    @classmethod
    def from_dict(cls, template_id: str, data: dict[str, Any]) -> "MessageTemplate":
        """Create a template from a YAML mapping.

        Args:
            template_id: Key of the template in the catalog file.
            data: Template definition.

        Returns:
            MessageTemplate instance.
        """
        variables = tuple(
            TemplateVariable(
                key=item["key"],
                label=item.get("label", ""),
                required=item.get("required", True),
                example=str(item.get("example", "")),
            )
            for item in data.get("variables", [])
        )
        return cls(
            id=template_id,
            name=data.get("name", template_id),
            category=MessageCategory(data["category"]),
            subject=data["subject"],
            body=data["body"],
            variables=variables,
            tone=data.get("tone", "neutral"),
            max_length=data.get("max_length", 500),
            action_required=data.get("action_required", False),
            urgency_prefix=data.get("urgency_prefix", ""),
        )


@dataclass
class RenderedMessage:
    """Result of rendering a template.

    ``missing_variables`` lists required variables without a value, in
    declaration order. ``unresolved_tokens`` lists placeholders that had
    no value and were stripped from the output.
    """

    subject: str
    body: str
    missing_variables: list[str] = field(default_factory=list)
    unresolved_tokens: list[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.missing_variables


class IssueType(str, Enum):
    FORBIDDEN_PHRASE = "forbidden_phrase"
    SENTENCE_LENGTH = "sentence_length"
    MISSING_GREETING = "missing_greeting"
    MISSING_CLOSING = "missing_closing"
    TOO_LONG = "too_long"


@dataclass(frozen=True)
class PhraseMatch:
    phrase: str
    group: PhraseGroup
    start: int
    end: int


@dataclass
class ValidationIssue:
    type: IssueType
    severity: str
    message: str
    suggestion: str | None = None
    position: tuple[int, int] | None = None


@dataclass
class ValidationResult:
    valid: bool
    issues: list[ValidationIssue]
    score: int

    @property
    def errors(self) -> list[ValidationIssue]:
        return [issue for issue in self.issues if issue.severity == "error"]

    @property
    def warnings(self) -> list[ValidationIssue]:
        return [issue for issue in self.issues if issue.severity == "warning"]


def _is_present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, tuple)):
        return len(value) > 0
    return True


def _to_text(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return ", ".join(str(item) for item in value)
    return str(value)


def find_placeholders(text: str) -> list[str]:
    """Placeholder names left in ``text``, first occurrence order, deduplicated."""
    seen: dict[str, None] = {}
    for match in _PLACEHOLDER.finditer(text):
        seen.setdefault(match.group(1), None)
    return list(seen)


def _render_text(text: str, variables: dict[str, Any], unresolved: dict[str, None]) -> str:
    def each_block(match: re.Match[str]) -> str:
        items = variables.get(match.group(1))
        if not isinstance(items, (list, tuple)) or not items:
            return ""
        content = match.group(2).strip("\n")
        return "\n".join(_THIS.sub(lambda _: str(item), content) for item in items)

    def if_block(match: re.Match[str]) -> str:
        if not _is_present(variables.get(match.group(1))):
            return ""
        return match.group(2).strip()

    def substitute(match: re.Match[str]) -> str:
        key = match.group(1)
        value = variables.get(key)
        if _is_present(value):
            return _to_text(value)
        unresolved.setdefault(key, None)
        return ""

    text = _EACH_BLOCK.sub(each_block, text)
    text = _IF_BLOCK.sub(if_block, text)
    return _PLACEHOLDER.sub(substitute, text)


def render_template(
    template: MessageTemplate,
    variables: dict[str, Any],
    strict: bool = False,
) -> RenderedMessage:
    """Render a template with variables.

    Args:
        template: The template to render.
        variables: Variable values. Lists are supported by ``#each`` blocks
            and joined with commas elsewhere.
        strict: Raise instead of returning a partial rendering.

    Returns:
        RenderedMessage with subject, body and the missing variable list.

    Raises:
        TemplateRenderError: In strict mode, if required variables are missing.
    """
    missing = [key for key in template.required_keys if not _is_present(variables.get(key))]
    if strict and missing:
        raise TemplateRenderError(template.id, missing)

    unresolved: dict[str, None] = {}
    subject = _render_text(template.subject, variables, unresolved).strip()
    body = _render_text(template.body, variables, unresolved)
    body = _EXTRA_BLANK_LINES.sub("\n\n", body).strip()

    if template.urgency_prefix:
        subject = f"{template.urgency_prefix}{subject}"

    if missing:
        logger.debug("Template %s rendered with missing variables: %s", template.id, missing)

    return RenderedMessage(
        subject=subject,
        body=body,
        missing_variables=missing,
        unresolved_tokens=list(unresolved),
    )


def find_forbidden_phrases(
    text: str,
    category: MessageCategory | None = None,
) -> list[PhraseMatch]:
    """Find forbidden phrases in ``text`` on word boundaries, case-insensitively.

    Phrase groups exempted for ``category`` are skipped.
    """
    if not text:
        return []
    exempt = CATEGORY_EXEMPTIONS.get(category, frozenset()) if category else frozenset()
    matches: list[PhraseMatch] = []
    for group, phrase, pattern in _FORBIDDEN_PATTERNS:
        if group in exempt:
            continue
        found = pattern.search(text)
        if found:
            matches.append(PhraseMatch(phrase, group, found.start(), found.end()))
    return matches


def validate_message(
    text: str,
    category: MessageCategory | None = None,
    max_sentence_words: int = 15,
    max_length: int = 500,
    require_greeting: bool = True,
    require_closing: bool = True,
) -> ValidationResult:
    """Score a message against the parent communication standards.

    Forbidden phrases are errors; long sentences, missing greeting or
    closing, and excess length are warnings. The score starts at 100 and
    loses 20 per error and 5 per warning.
    """
    issues: list[ValidationIssue] = []

    for match in find_forbidden_phrases(text, category):
        alternative = APPROVED_ALTERNATIVES.get(match.phrase)
        issues.append(
            ValidationIssue(
                type=IssueType.FORBIDDEN_PHRASE,
                severity="error",
                message=f'Forbidden phrase detected: "{match.phrase}"',
                suggestion=f'Consider using: "{alternative}"' if alternative else "Remove or rephrase this.",
                position=(match.start, match.end),
            )
        )

    for sentence in _SENTENCE_SPLIT.split(text):
        words = sentence.split()
        if len(words) > max_sentence_words:
            issues.append(
                ValidationIssue(
                    type=IssueType.SENTENCE_LENGTH,
                    severity="warning",
                    message=f"Sentence too long ({len(words)} words). Max recommended: {max_sentence_words}",
                    suggestion="Break into shorter sentences for clarity.",
                )
            )

    lowered = text.lower()
    if require_greeting and not any(
        opening.lower().rstrip(",") in lowered for opening in APPROVED_OPENINGS
    ):
        issues.append(
            ValidationIssue(
                type=IssueType.MISSING_GREETING,
                severity="warning",
                message="Missing approved greeting.",
                suggestion=f"Start with one of: {', '.join(APPROVED_OPENINGS)}",
            )
        )

    if require_closing and not any(
        closing.lower().rstrip(",") in lowered for closing in APPROVED_CLOSINGS
    ):
        issues.append(
            ValidationIssue(
                type=IssueType.MISSING_CLOSING,
                severity="warning",
                message="Missing approved closing.",
                suggestion=f"End with one of: {', '.join(APPROVED_CLOSINGS)}",
            )
        )

    if len(text) > max_length:
        issues.append(
            ValidationIssue(
                type=IssueType.TOO_LONG,
                severity="warning",
                message=f"Message too long ({len(text)} chars). Max: {max_length}",
                suggestion="Shorten the message for better readability.",
            )
        )

    error_count = sum(1 for issue in issues if issue.severity == "error")
    warning_count = len(issues) - error_count
    return ValidationResult(
        valid=error_count == 0,
        issues=issues,
        score=max(0, 100 - error_count * 20 - warning_count * 5),
    )


def sanitize_message(text: str) -> str:
    """Replace phrases that have an approved alternative."""
    for pattern, replacement in _ALTERNATIVE_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def _vars(*specs: tuple[str, bool]) -> tuple[TemplateVariable, ...]:
    return tuple(TemplateVariable(key=key, required=required) for key, required in specs)


STANDARD_TEMPLATES: tuple[MessageTemplate, ...] = (
    MessageTemplate(
        id="absence_notice",
        name="Absence Notice",
        category=MessageCategory.ATTENDANCE,
        subject="Attendance Update for {{student_name}}",
        body=(
            "Dear Parent/Guardian,\n\n"
            "This is to let you know that {{student_name}} was not recorded as present "
            "in class today, {{date}}.\n\n"
            "{{#if reason}}\nReason noted: {{reason}}\n{{/if}}\n\n"
            "If this is incorrect, please contact the school office.\n\n"
            "Thank you.\n{{school_name}}"
        ),
        variables=_vars(("student_name", True), ("date", True), ("reason", False), ("school_name", True)),
    ),
    MessageTemplate(
        id="late_arrival_notice",
        name="Late Arrival Notice",
        category=MessageCategory.ATTENDANCE,
        subject="Arrival Update for {{student_name}}",
        body=(
            "Dear Parent/Guardian,\n\n"
            "{{student_name}} arrived at school at {{arrival_time}} today, {{date}}.\n\n"
            "The school day begins at {{school_start_time}}.\n\n"
            "This is for your records. No action is needed.\n\n"
            "Thank you.\n{{school_name}}"
        ),
        variables=_vars(
            ("student_name", True),
            ("arrival_time", True),
            ("date", True),
            ("school_start_time", True),
            ("school_name", True),
        ),
        max_length=400,
    ),
    MessageTemplate(
        id="learning_update",
        name="Learning Update",
        category=MessageCategory.LEARNING_UPDATE,
        tone="warm",
        subject="Learning Update for {{student_name}}",
        body=(
            "Dear Parent/Guardian,\n\n"
            "This week {{student_name}} has been working on {{topic}}.\n\n"
            "{{#if highlights}}\nHighlights:\n{{#each highlights}}\n- {{this}}\n{{/each}}\n{{/if}}\n\n"
            "{{#if home_activity}}\nAt home you could try: {{home_activity}}\n{{/if}}\n\n"
            "Thank you for your support.\n{{teacher_name}}"
        ),
        variables=_vars(
            ("student_name", True),
            ("topic", True),
            ("highlights", False),
            ("home_activity", False),
            ("teacher_name", True),
        ),
    ),
    MessageTemplate(
        id="general_reminder",
        name="General Reminder",
        category=MessageCategory.ANNOUNCEMENT,
        tone="warm",
        subject="Reminder: {{subject}}",
        body=(
            "Dear Parent/Guardian,\n\n"
            "This is a friendly reminder about {{subject}}.\n\n"
            "{{message}}\n\n"
            "{{#if action_required}}\n{{action_required}}\n{{/if}}\n\n"
            "Thank you for your support.\n{{school_name}}"
        ),
        variables=_vars(
            ("subject", True), ("message", True), ("action_required", False), ("school_name", True)
        ),
        max_length=400,
    ),
    MessageTemplate(
        id="fee_statement",
        name="Fee Statement",
        category=MessageCategory.FEE_STATUS,
        tone="formal",
        subject="Account Statement for {{student_name}}",
        body=(
            "Dear Parent/Guardian,\n\n"
            "Please find the current account summary for {{student_name}}.\n\n"
            "Amount for this term: {{term_amount}}\n"
            "Received so far: {{amount_received}}\n\n"
            "{{#if plan_note}}\n{{plan_note}}\n{{/if}}\n\n"
            "Please contact the school office if you have questions.\n\n"
            "Kind regards,\n{{school_name}}"
        ),
        variables=_vars(
            ("student_name", True),
            ("term_amount", True),
            ("amount_received", True),
            ("plan_note", False),
            ("school_name", True),
        ),
    ),
)


class TemplateCatalog:
    """Lookup of message templates by id.

    Starts from the standard templates; YAML catalogs add or replace
    entries by id.
    """

    def __init__(self, templates: tuple[MessageTemplate, ...] | list[MessageTemplate] = STANDARD_TEMPLATES) -> None:
        self._templates: dict[str, MessageTemplate] = {t.id: t for t in templates}

    def __contains__(self, template_id: str) -> bool:
        return template_id in self._templates

    def __len__(self) -> int:
        return len(self._templates)

    def get(self, template_id: str) -> MessageTemplate:
        try:
            return self._templates[template_id]
        except KeyError:
            raise KeyError(f"Unknown template: {template_id}") from None

    def by_category(self, category: MessageCategory) -> list[MessageTemplate]:
        return [t for t in self._templates.values() if t.category == category]

    def register(self, template: MessageTemplate) -> None:
        self._templates[template.id] = template

    def load_mapping(self, data: dict[str, Any], source: str = "<mapping>") -> int:
        """Register every template of a ``{"templates": {id: definition}}`` mapping.

        Returns:
            Number of templates registered.
        """
        definitions = data.get("templates", {})
        for template_id, definition in definitions.items():
            try:
                self.register(MessageTemplate.from_dict(template_id, definition))
            except (KeyError, ValueError) as e:
                raise YAMLLoadError(Path(source), f"Invalid template '{template_id}': {e}") from e
        logger.info("Loaded %d templates from %s", len(definitions), source)
        return len(definitions)

    def load_file(self, path: Path | str) -> int:
        return self.load_mapping(load_yaml(path), source=str(path))

    def load_directory(self, path: Path | str) -> int:
        """Merge every YAML file of a directory, later files overriding earlier ones."""
        merged: dict[str, Any] = {}
        for content in load_yaml_directory(path).values():
            merged = deep_merge(merged, content)
        return self.load_mapping(merged, source=str(path))


def get_default_catalog() -> TemplateCatalog:
    """A fresh catalog holding the standard templates."""
    return TemplateCatalog()
