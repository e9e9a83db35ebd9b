"""
Identifier and citation-anchor helpers.

Node ids, chunk ids and citation anchors are all derived from sanitized
reference strings so that re-ingesting unchanged content yields the same keys.
"""

from enum import Enum


class MarkerStyle(str, Enum):
    """Shape of a list marker after normalization."""
    BULLET = "bullet"
    NUMERIC = "numeric"
    ALPHA = "alpha"
    ROMAN = "roman"
    ALNUM = "alnum"
    SYMBOL = "symbol"


BULLET_GLYPHS = {"-", "*", "•"}
ROMAN_CHARS = set("ivxlcdm")


def sanitize_ref(reference: str) -> str:
    """
    Reduce a reference to a lowercase ``[a-z0-9_]`` key.

    Every character outside ASCII alphanumerics becomes an underscore, runs of
    underscores collapse to one, and leading/trailing underscores are dropped.

    Args:
        reference: Free-form reference such as ``"8.4.5"`` or ``"Table 3"``.

    Returns:
        The sanitized key, possibly empty.
    """
    chars = [
        ch.lower() if ch.isascii() and ch.isalnum() else "_"
        for ch in reference
    ]
    key = "".join(chars)
    while "__" in key:
        key = key.replace("__", "_")
    return key.strip("_")


def normalize_marker_label(marker: str) -> str:
    """
    Canonicalize a list/note marker.

    Trailing ``)``, ``.``, ``:`` and ``;`` are removed, dash and bullet glyphs
    fold to ``-``, ``NOTE`` / ``NOTE <n>`` keep their upper-case form and
    everything else is lower-cased. Applying it twice is a no-op.

    Args:
        marker: The raw marker text, e.g. ``"b)"`` or ``"Note 2"``.

    Returns:
        The normalized marker label.
    """
    trimmed = marker.strip()
    if not trimmed:
        return "-"

    without_suffix = trimmed.rstrip(").:;")
    canonical = without_suffix.replace("–", "-").replace("—", "-")
    if canonical in BULLET_GLYPHS:
        return "-"

    upper = canonical.upper()
    if upper == "NOTE":
        return "NOTE"

    if upper.startswith("NOTE "):
        rest = upper[len("NOTE "):].strip()
        if rest and rest.isascii() and rest.isdigit():
            return f"NOTE {rest}"

    return canonical.lower()


def parse_numeric_alpha_marker(value: str) -> tuple[int, str | None] | None:
    """
    Parse markers of the form ``<digits><optional lowercase letter>``.

    Returns:
        ``(number, suffix)`` for markers like ``"12"`` or ``"1a"``; ``None``
        when the value has any other shape.
    """
    digits = ""
    suffix: str | None = None

    for ch in value:
        if ch.isascii() and ch.isdigit():
            if suffix is not None:
                return None
            digits += ch
        elif ch.isascii() and ch.islower():
            if suffix is not None:
                return None
            suffix = ch
        else:
            return None

    if not digits:
        return None
    return int(digits), suffix


def is_roman_marker(value: str) -> bool:
    return len(value) >= 2 and all(ch in ROMAN_CHARS for ch in value)


def classify_marker_style(marker_norm: str) -> MarkerStyle:
    """Classify a normalized marker into a list marker style."""
    if marker_norm == "-":
        return MarkerStyle.BULLET
    if marker_norm.isascii() and marker_norm.isdigit():
        return MarkerStyle.NUMERIC
    if len(marker_norm) == 1 and marker_norm.isascii() and marker_norm.islower():
        return MarkerStyle.ALPHA
    if is_roman_marker(marker_norm):
        return MarkerStyle.ROMAN
    if parse_numeric_alpha_marker(marker_norm) is not None:
        return MarkerStyle.ALNUM
    return MarkerStyle.SYMBOL


def build_citation_anchor_id(
    doc_id: str,
    parent_ref: str,
    anchor_type: str,
    anchor_label_norm: str | None,
    anchor_order: int | None,
) -> str:
    """
    Build the externally visible citation key of a sub-unit.

    Format: ``doc_id:<parent ref key>:<anchor type key>:<label key>`` where the
    label key is the sanitized normalized label, else the sibling order, else
    ``root``.
    """
    label_key = sanitize_ref(anchor_label_norm) if anchor_label_norm is not None else ""
    if not label_key:
        label_key = str(anchor_order) if anchor_order is not None else "root"

    return f"{doc_id}:{sanitize_ref(parent_ref)}:{sanitize_ref(anchor_type)}:{label_key}"
