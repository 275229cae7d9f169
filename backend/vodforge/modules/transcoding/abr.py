"""Adaptive bitrate ladder selection.

The ladder is a pure function of the source dimensions: the short edge picks
the tiers and pins each tier's short edge, the long edge follows the source
aspect ratio.
"""

import math
from dataclasses import dataclass

from vodforge.core.errors import ValidationError
from vodforge.modules.transcoding.models import (
    TARGET_BITRATES,
    TARGET_PROFILES,
    TARGET_SHORT_EDGE,
    Target,
)
from vodforge.modules.video.models import Orientation

# Highest tier first; the last one is always produced
LADDER = (Target.RES_1080P, Target.RES_720P, Target.RES_360P)


@dataclass(frozen=True)
class ABRVariant:
    """A single variant in an ABR ladder."""
    target: Target
    width: int
    height: int
    bitrate: int  # bps
    profile: str = "main"
    level: str = "3.1"

    @property
    def label(self) -> str:
        return self.target.value


def round_to_even(value: float) -> int:
    """Round to the nearest even integer, halves rounding up."""
    return 2 * math.floor(value / 2 + 0.5)


def get_orientation(width: int, height: int) -> Orientation:
    return Orientation.LANDSCAPE if width > height else Orientation.PORTRAIT


def compute_scale(width: int, height: int, short_edge: int) -> tuple[int, int]:
    """Scale ``width`` x ``height`` so its short edge equals ``short_edge``.

    Returns:
        (width, height) of the rendition, both even.
    """
    if get_orientation(width, height) == Orientation.LANDSCAPE:
        return round_to_even(width * short_edge / height), short_edge
    return short_edge, round_to_even(height * short_edge / width)


def _validate_dimensions(width, height) -> None:
    for name, value in (("width", width), ("height", height)):
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            raise ValidationError(
                f"Source {name} must be a positive integer", **{name: value}
            )


def select_targets(width: int, height: int) -> tuple[Orientation, list[ABRVariant]]:
    """Derive the rendition ladder for a source of ``width`` x ``height``.

    1080p is included only when the short edge is at least 1080, 720p only
    when it is at least 720, 360p always.

    Raises:
        ValidationError: dimensions missing or not positive.
    """
    _validate_dimensions(width, height)
    orientation = get_orientation(width, height)
    source_short_edge = min(width, height)

    variants = []
    for target in LADDER:
        short_edge = TARGET_SHORT_EDGE[target]
        if target != Target.RES_360P and source_short_edge < short_edge:
            continue
        scaled_width, scaled_height = compute_scale(width, height, short_edge)
        profile, level = TARGET_PROFILES[target]
        variants.append(
            ABRVariant(
                target=target,
                width=scaled_width,
                height=scaled_height,
                bitrate=TARGET_BITRATES[target],
                profile=profile,
                level=level,
            )
        )
    return orientation, variants
