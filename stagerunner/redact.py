"""Secret scrubbing for captured stage output, logs and history rows."""

from __future__ import annotations

import re
import threading

REDACTED = "[REDACTED]"

_PATTERNS = [
    r"gh[pousr]_[A-Za-z0-9_]{36,}",  # GitHub classic tokens
    r"github_pat_[A-Za-z0-9_]{22,}",  # GitHub fine-grained PATs
    r"glpat-[A-Za-z0-9_-]{20,}",  # GitLab PATs
    r"xox[bpars]-[A-Za-z0-9-]{10,}",  # Slack tokens
    r"AKIA[0-9A-Z]{16}",  # AWS access key IDs
    r"squ_[a-f0-9]{40}",  # SonarQube user tokens
    r"sqa_[a-f0-9]{40}",  # SonarQube analysis tokens
    r"dckr_pat_[A-Za-z0-9_-]{20,}",  # Docker Hub PATs
    r"npm_[A-Za-z0-9]{36}",  # npm tokens
    r"sk-[A-Za-z0-9_-]{20,}",  # OpenAI-style keys
    r"Bearer\s+[A-Za-z0-9_\-.]{20,}",  # Bearer tokens
]

_COMBINED_RE = re.compile("|".join(_PATTERNS))


def scrub_secrets(text: str) -> str:
    """Replace known secret patterns with ``[REDACTED]``."""
    if not text:
        return text
    return _COMBINED_RE.sub(REDACTED, text)


class Redactor:
    """Removes registered secret values and known token shapes from text.

    One instance belongs to one run; secrets registered while resolving
    credentials are redacted from everything the run stores or logs.
    """

    def __init__(self, secrets: list[str] | None = None) -> None:
        self._lock = threading.Lock()
        self._secrets: set[str] = set()
        self._pattern: re.Pattern[str] | None = None
        for secret in secrets or []:
            self.register(secret)

    def register(self, secret: str) -> None:
        if not secret:
            return
        with self._lock:
            if secret in self._secrets:
                return
            self._secrets.add(secret)
            # Longest first so a secret containing another is removed whole.
            ordered = sorted(self._secrets, key=len, reverse=True)
            self._pattern = re.compile("|".join(re.escape(s) for s in ordered))

    def __len__(self) -> int:
        return len(self._secrets)

    def redact(self, text: str) -> str:
        if not text:
            return text
        pattern = self._pattern
        if pattern is not None:
            text = pattern.sub(REDACTED, text)
        return scrub_secrets(text)
