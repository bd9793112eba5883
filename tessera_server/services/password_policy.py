# Copyright (C) 2024 Tessera Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Password policy: composition rules plus a zxcvbn guessability score."""

import re
from dataclasses import dataclass, field

from zxcvbn import zxcvbn

from tessera_server.config import settings

MIN_LENGTH = 12
MAX_LENGTH = 128
# zxcvbn gets slow (and newer releases refuse input) past this length; the
# prefix is plenty to score a password this long.
STRENGTH_INPUT_LIMIT = 72

_UPPER = re.compile(r"[A-Z]")
_LOWER = re.compile(r"[a-z]")
_DIGIT = re.compile(r"\d")
_SYMBOL = re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?`~]")

ERRORS = {
    "too_short": f"Password must be at least {MIN_LENGTH} characters",
    "too_long": f"Password must not exceed {MAX_LENGTH} characters",
    "no_uppercase": "Password must contain at least one uppercase letter",
    "no_lowercase": "Password must contain at least one lowercase letter",
    "no_number": "Password must contain at least one number",
    "no_special": "Password must contain at least one special character (!@#$%^&*...)",
    "too_weak": "Password is too weak or easily guessable",
}


@dataclass
class PasswordEvaluation:
    valid: bool
    score: int
    errors: list[str] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)
    crack_time: str = ""


def evaluate_password(candidate: str, min_score: int | None = None) -> PasswordEvaluation:
    """Score a candidate and check it against the policy. Suggestions are advisory only."""
    if min_score is None:
        min_score = settings.min_password_score
    errors: list[str] = []

    if len(candidate) < MIN_LENGTH:
        errors.append(ERRORS["too_short"])
    if len(candidate) > MAX_LENGTH:
        errors.append(ERRORS["too_long"])
    if not _UPPER.search(candidate):
        errors.append(ERRORS["no_uppercase"])
    if not _LOWER.search(candidate):
        errors.append(ERRORS["no_lowercase"])
    if not _DIGIT.search(candidate):
        errors.append(ERRORS["no_number"])
    if not _SYMBOL.search(candidate):
        errors.append(ERRORS["no_special"])

    result = zxcvbn(candidate[:STRENGTH_INPUT_LIMIT])
    score = int(result["score"])
    feedback = result.get("feedback") or {}
    suggestions = list(feedback.get("suggestions") or [])
    crack_time = str(
        (result.get("crack_times_display") or {}).get("offline_slow_hashing_1e4_per_second", "")
    )

    if score < min_score:
        errors.append(ERRORS["too_weak"])

    return PasswordEvaluation(
        valid=not errors,
        score=score,
        errors=errors,
        suggestions=suggestions,
        crack_time=crack_time,
    )
