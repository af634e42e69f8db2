"""Category rule compilation and matching logic (core domain)."""

from __future__ import annotations

from dataclasses import dataclass
import re
from typing import Iterable, List, Optional, Sequence

MISC_SLUG = "misc"

CATEGORY_SLUGS = (
    "rent",
    "jobs",
    "transport",
    "education",
    "services",
    "meetups",
    "stuff",
    MISC_SLUG,
)


@dataclass(frozen=True)
class CategoryRule:
    """One ordered classification rule: a slug and its synonym regex."""

    slug: str
    pattern: re.Pattern


# Order is the tie-break: the first matching rule wins.
DEFAULT_CATEGORY_PATTERNS = (
    ("rent", r"аренд|сдам|сдаю|сниму|квартир|комнат|жиль|rent\b"),
    ("jobs", r"работ|вакансия|ищу работ|резюме|нанима|job|vacancy"),
    ("transport", r"авто\b|машин|автомобил|bmw|volkswagen|toyota|ford|hyundai|kia"),
    ("education", r"обучени|курс|репетитор|урок\b|учу\b|lesson"),
    ("services", r"услуг|помогу|сделаю|перевод|юрист|ремонт|клининг|service"),
    ("meetups", r"встреч|прогулк|знакомств|ищу компани|meetup"),
    ("stuff", r"продам|продаю|продается|куплю|отдам|даром|телефон|ноутбук"),
)


def compile_rule(slug: str, raw_regex: str) -> CategoryRule:
    if slug not in CATEGORY_SLUGS or slug == MISC_SLUG:
        raise ValueError(f"Unknown category slug: {slug}")
    return CategoryRule(slug=slug, pattern=re.compile(raw_regex, re.IGNORECASE))


def build_rules(rules_config: Optional[Iterable[dict]] = None) -> List[CategoryRule]:
    """Compile category rules, keeping their configured order.

    Without a config the built-in rule list is used. Config entries look like
    ``{"slug": "rent", "regex": "...", "enabled": true}``.
    """

    if rules_config is None:
        return [compile_rule(slug, raw) for slug, raw in DEFAULT_CATEGORY_PATTERNS]

    compiled: List[CategoryRule] = []
    for rule in rules_config:
        if not rule.get("enabled", True):
            continue
        compiled.append(compile_rule(rule["slug"], rule["regex"]))
    return compiled


DEFAULT_RULES: Sequence[CategoryRule] = tuple(build_rules())


def classify(text: str, rules: Iterable[CategoryRule] = DEFAULT_RULES) -> str:
    """Return the slug of the first rule matching anywhere in the text."""

    for rule in rules:
        if rule.pattern.search(text):
            return rule.slug
    return MISC_SLUG
