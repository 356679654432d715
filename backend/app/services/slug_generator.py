"""
Exposure Backend — Slug Generator
===================================

What:  Produces the short public identifiers used in gallery URLs.
Why:   Numeric ids are guessable and leak gallery size; slugs are neither.
How:   Two kinds of slug:
       1. Random slugs (`generate`): drawn with `secrets` from an alphabet
          without visually confusable characters (0/o, 1/l/i). Used as the
          global place slug and as the per-place photo slug.
       2. Text slugs (`slugify`): derived from country, location and name,
          e.g. "Île-de-France" → "ile-de-france". Used for the readable
          /country/location/name place path.
Who:   PlaceService (both kinds) and PhotoService (random only).

Collision handling:
    At 10 characters over a 31-symbol alphabet there are ~8.2e14 slugs, so
    collisions are rare but possible. `generate_unique` retries against a
    membership test up to a bounded count; callers that rely on a database
    unique constraint instead retry the insert (see PlaceService).
"""

import logging
import re
import secrets
import unicodedata
from typing import Awaitable, Callable, Container, Optional

from app.config import settings
from app.exceptions import ConflictError

logger = logging.getLogger(__name__)

# Lowercase letters and digits minus 0, o, 1, l, i
SLUG_ALPHABET = "abcdefghjkmnpqrstuvwxyz23456789"

MIN_SLUG_LENGTH = 8
MAX_SLUG_LENGTH = 12

# Text slugs are cut at a word boundary at this length
MAX_TEXT_SLUG_LENGTH = 30
MAX_SUFFIX_ATTEMPTS = 100


class SlugGenerator:
    """Random and text-derived slug generation."""

    def __init__(self, length: Optional[int] = None, max_attempts: Optional[int] = None):
        self.length = length or settings.slug_length
        if not MIN_SLUG_LENGTH <= self.length <= MAX_SLUG_LENGTH:
            raise ValueError(
                f"Slug length must be between {MIN_SLUG_LENGTH} and {MAX_SLUG_LENGTH}"
            )
        self.max_attempts = max_attempts or settings.slug_max_attempts

    # ── Random Slugs ──────────────────────────────────────────────────────

    def generate(self) -> str:
        """Return a fresh random slug of `self.length` characters."""
        return "".join(secrets.choice(SLUG_ALPHABET) for _ in range(self.length))

    def generate_unique(self, taken: Container[str]) -> str:
        """
        Return a random slug not contained in `taken`.

        Raises:
            ConflictError: every attempt collided
        """
        for attempt in range(1, self.max_attempts + 1):
            slug = self.generate()
            if slug not in taken:
                return slug
            logger.warning("Slug collision on attempt %d/%d", attempt, self.max_attempts)
        raise ConflictError(
            message="Could not generate a unique identifier. Please try again.",
            context={"attempts": self.max_attempts},
        )

    # ── Text Slugs ────────────────────────────────────────────────────────

    @staticmethod
    def slugify(text: Optional[str]) -> str:
        """
        Derive a URL path segment from display text.

        Lowercases, strips accents (NFD then ASCII), drops anything other
        than letters, digits, whitespace and hyphens, turns whitespace runs
        into single hyphens and truncates at a hyphen to 30 characters.
        """
        if not text:
            return ""
        slug = unicodedata.normalize("NFD", text.lower())
        slug = slug.encode("ascii", "ignore").decode("ascii")
        slug = re.sub(r"[^a-z0-9\s-]", "", slug)
        slug = re.sub(r"\s+", "-", slug)
        slug = re.sub(r"-+", "-", slug)
        if len(slug) > MAX_TEXT_SLUG_LENGTH:
            truncated = slug[:MAX_TEXT_SLUG_LENGTH]
            cut = truncated.rfind("-")
            slug = truncated[:cut] if cut > 0 else truncated
        return slug.strip("-")

    async def unique_slugify(
        self, text: str, exists: Callable[[str], Awaitable[bool]]
    ) -> str:
        """
        Slugify `text`, appending -2, -3, ... until `exists` reports it free.

        Raises:
            ConflictError: no free suffix within 100 attempts
        """
        base = self.slugify(text)
        if not await exists(base):
            return base
        for suffix in range(2, MAX_SUFFIX_ATTEMPTS + 1):
            candidate = f"{base}-{suffix}"
            if not await exists(candidate):
                return candidate
        raise ConflictError(
            message=f"Too many places share the name '{text}'.",
            context={"base_slug": base},
        )


# ── Singleton Instance ────────────────────────────────────────────────────
slug_generator = SlugGenerator()
