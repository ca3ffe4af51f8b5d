import math
from typing import Dict, Optional, Tuple

SUPPORTED_GRID_TEMPLATES = {"square", "hexagonal", "circle"}

# (max members, side length) for the square grid breakpoints.
GRID_BREAKPOINTS = ((4, 2), (9, 3), (16, 4), (25, 5), (36, 6))


def grid_side_for(member_count: int) -> int:
    count = max(int(member_count or 0), 0)
    for upper_bound, side in GRID_BREAKPOINTS:
        if count <= upper_bound:
            return side
    return int(math.ceil(math.sqrt(count)))


def get_grid_dimensions(member_count: int, template: Optional[str] = None) -> Dict[str, int]:
    """Return ``{"cols", "rows", "total_cells"}`` for a member count.

    Square and hexagonal templates currently share the same sizing, so the
    template name is accepted but does not change the result.
    """
    side = grid_side_for(member_count)
    return {"cols": side, "rows": side, "total_cells": side * side}


def get_center_cell_index(member_count: int, template: Optional[str] = None) -> int:
    total_cells = get_grid_dimensions(member_count, template)["total_cells"]
    return min(total_cells // 2, total_cells - 1)


def member_has_photo(member) -> bool:
    if not isinstance(member, dict):
        return False
    photo = member.get("photo")
    return isinstance(photo, str) and photo.strip() != ""


def can_generate_variants(order) -> Tuple[bool, Optional[str]]:
    members = (order or {}).get("members") or []
    if len(members) < 3:
        return False, "At least 3 members required for center variants"

    photographed = [member for member in members if member_has_photo(member)]
    if len(photographed) < 2:
        return False, "At least 2 members with photos required"

    return True, None
