from __future__ import annotations

from typing import Iterable


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


class InviteValidator:
    """Gate sign-ups behind a fixed list of invite codes.

    Codes compare case-insensitively after trimming. When the feature is
    disabled every code (including an empty one) is accepted.
    """

    def __init__(self, enabled: bool, codes: Iterable[str] = ()) -> None:
        self.enabled = enabled
        self._codes = frozenset(
            normalize_code(code) for code in codes if normalize_code(code)
        )

    def is_enabled(self) -> bool:
        return self.enabled

    def validate(self, code: str) -> bool:
        if not self.enabled:
            return True
        normalized = normalize_code(code)
        return bool(normalized) and normalized in self._codes

    def __len__(self) -> int:
        return len(self._codes)
