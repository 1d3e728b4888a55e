"""
Message composer - loads outbound copy from YAML.

Keys map to a single string or a list of variants; a list is resolved
deterministically per user so one user always sees the same wording.
"""

import hashlib
import logging
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

COPY_DIR = Path(__file__).resolve().parent.parent.parent / "copy"
DEFAULT_LOCALE = "en"


class _SafeDict(dict):
    """Leave unknown placeholders as-is instead of raising KeyError."""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


class MessageComposer:
    def __init__(self, locale: str = DEFAULT_LOCALE, copy_file: Path | None = None):
        self.locale = locale
        self.copy_file = copy_file or COPY_DIR / f"{locale}.yml"
        self._copy_data: dict[str, Any] = {}
        self._load_copy()

    def _load_copy(self) -> None:
        if not self.copy_file.exists():
            logger.warning(f"Copy file not found: {self.copy_file}, using empty copy")
            return
        with open(self.copy_file, encoding="utf-8") as f:
            self._copy_data = yaml.safe_load(f) or {}
        logger.info(f"Loaded copy from {self.copy_file}")

    def has(self, key: str) -> bool:
        return key in self._copy_data

    def _select_variant(self, key: str, user_id: int | None = None) -> str:
        if key not in self._copy_data:
            logger.warning(f"Message key not found: {key}")
            return f"[MISSING: {key}]"

        variants = self._copy_data[key]
        if not isinstance(variants, list):
            return str(variants)
        if not variants:
            return ""
        if user_id is None:
            return str(variants[0])
        digest = int(hashlib.md5(f"{key}:{user_id}".encode()).hexdigest(), 16)
        return str(variants[digest % len(variants)])

    def render(self, key: str, user_id: int | None = None, **kwargs: Any) -> str:
        """
        Render a message from copy.

        Args:
            key: Message key in YAML
            user_id: Telegram user id for deterministic variant selection
            **kwargs: Template variables to substitute

        Returns:
            Rendered message string
        """
        template = self._select_variant(key, user_id=user_id)
        return template.format_map(_SafeDict(kwargs)).strip()


_composer: MessageComposer | None = None


def get_composer() -> MessageComposer:
    global _composer
    if _composer is None:
        _composer = MessageComposer()
    return _composer


def render_message(key: str, user_id: int | None = None, **kwargs: Any) -> str:
    return get_composer().render(key, user_id=user_id, **kwargs)
