"""Game version classification used throughout the ECL tooling."""

_PRE_TH10 = frozenset({6, 7, 8, 9, 95})
_PRE_TH13 = _PRE_TH10 | frozenset({10, 103, 11, 12, 125, 128})
_NUMERIC_DIFFICULTY = frozenset({185, 19})


def is_post_th10(version: int) -> bool:
    """Return whether the version uses the TH10-style (stack machine) format."""
    return version not in _PRE_TH10


def is_post_th13(version: int) -> bool:
    """Return whether the version is TH13 or later."""
    return version not in _PRE_TH13


def is_numeric_difficulty_version(version: int) -> bool:
    """Return whether the version names difficulties by number rather than letter."""
    return version in _NUMERIC_DIFFICULTY


def get_default_none_rank(version: int) -> int:
    """Return the rank mask written as the '!-' label for the version."""
    if not is_post_th13(version):
        return 0xF0
    if is_numeric_difficulty_version(version):
        return 0x00
    return 0xC0