"""
Single-primary image normalization.

normalize() turns any ordered image list into one with exactly one
primary entry (or none, when the list is empty):

    - no entry marked primary  -> the first entry becomes primary
    - several marked primary   -> the first marked entry stays primary
    - exactly one marked       -> unchanged

Invariants:
    - Pure and total: no I/O, never raises for a list of Image
    - Order and URLs are preserved; only is_primary flags change
    - normalize(normalize(x)) == normalize(x)

How to change safely:
    - Writers and the reader both call normalize(); changing the rule
      changes what readers show for data written by other paths
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import replace
from typing import TypeVar

from ..models import Image, ImageInput

T = TypeVar("T", Image, ImageInput)


def normalize(images: Sequence[T]) -> list[T]:
    """Return images with exactly one primary entry.

    Works on both Image and ImageInput, returning the same type.

    Example:
        >>> normalize([Image("a.png"), Image("b.png")])
        [Image(url='a.png', is_primary=True), Image(url='b.png', is_primary=False)]
    """
    if not images:
        return []

    primary_at = next((i for i, image in enumerate(images) if image.is_primary), 0)
    result = []
    for i, image in enumerate(images):
        wanted = i == primary_at
        result.append(image if image.is_primary == wanted else replace(image, is_primary=wanted))
    return result


def apply_primary_index(images: Sequence[T], primary_index: int | None) -> list[T]:
    """Mark the caller-chosen image as primary, clearing the others.

    An index of None (or out of range) leaves the flags as supplied, so
    normalize() decides.
    """
    if primary_index is None or not 0 <= primary_index < len(images):
        return list(images)
    return [replace(image, is_primary=i == primary_index) for i, image in enumerate(images)]


def primary_count(images: Sequence[Image]) -> int:
    return sum(1 for image in images if image.is_primary)
