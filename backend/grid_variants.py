import logging
from typing import Dict, Iterator, List, Optional

from .grid_center import get_center_cell_index, get_grid_dimensions, member_has_photo

logger = logging.getLogger(__name__)

DEFAULT_GRID_TEMPLATE = "square"


class InvalidOrderError(ValueError):
    pass


class InsufficientMembersError(ValueError):
    pass


def resolve_member_id(member: Dict, index: int) -> str:
    identifier = member.get("id") or member.get("memberRollNumber")
    return str(identifier) if identifier else f"member-{index}"


class GridVariant:
    """One arrangement of an order's members with a given member pinned to the center cell."""

    def __init__(
        self,
        center_member: Dict,
        members: List[Optional[Dict]],
        center_index: int,
        grid_template: str,
        grid_dimensions: Dict[str, int],
    ):
        self.id = f"variant-{center_member['id']}"
        self.center_member = center_member
        self.members = members
        self.center_index = center_index
        self.grid_template = grid_template
        self.grid_dimensions = grid_dimensions

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "centerMember": dict(self.center_member),
            "members": [dict(member) if member else None for member in self.members],
            "centerIndex": self.center_index,
            "gridTemplate": self.grid_template,
            "gridDimensions": dict(self.grid_dimensions),
        }

    def __repr__(self) -> str:
        return f"GridVariant(id={self.id!r}, center_index={self.center_index})"


def normalize_members(order) -> List[Dict]:
    if not isinstance(order, dict):
        raise InvalidOrderError("Invalid order data: members array is missing or invalid")
    members = order.get("members")
    if not isinstance(members, list):
        raise InvalidOrderError("Invalid order data: members array is missing or invalid")
    if not members:
        raise InvalidOrderError("Order has no members")

    normalized: List[Dict] = []
    for index, member in enumerate(members):
        if not isinstance(member, dict):
            continue
        copy = dict(member)
        copy["id"] = resolve_member_id(member, index)
        normalized.append(copy)
    return normalized


def build_positions(
    members: List[Dict], center_member: Dict, center_index: int, total_cells: int
) -> List[Optional[Dict]]:
    positions: List[Optional[Dict]] = [None] * total_cells
    positions[center_index] = center_member

    remaining = iter(
        member for member in members if member["id"] != center_member["id"]
    )
    for position in range(total_cells):
        if position == center_index:
            continue
        member = next(remaining, None)
        if member is None:
            break
        positions[position] = member

    while positions and positions[-1] is None:
        positions.pop()
    return positions


def iter_grid_variants(order) -> Iterator[GridVariant]:
    """Yield one variant per photographed member, in the order's member order.

    Raises ``InsufficientMembersError`` when fewer than two members have a
    photo. Because this is a generator, the caller regains control between
    variants.
    """
    members = normalize_members(order)
    photographed = [member for member in members if member_has_photo(member)]
    if len(photographed) < 2:
        raise InsufficientMembersError(
            "Not enough members with photos to generate variants "
            f"(found {len(photographed)}, need at least 2)"
        )

    template = (
        order.get("gridTemplate") or order.get("grid_template") or DEFAULT_GRID_TEMPLATE
    )
    dimensions = get_grid_dimensions(len(members), template)
    center_index = get_center_cell_index(len(members), template)

    logger.debug(
        "Generating %d variants for order %s (%s, %dx%d, center %d)",
        len(photographed),
        order.get("id"),
        template,
        dimensions["cols"],
        dimensions["rows"],
        center_index,
    )

    for center_member in photographed:
        positions = build_positions(
            members, center_member, center_index, dimensions["total_cells"]
        )
        yield GridVariant(
            center_member=center_member,
            members=positions,
            center_index=center_index,
            grid_template=template,
            grid_dimensions=dimensions,
        )


def generate_grid_variants(order) -> List[GridVariant]:
    return list(iter_grid_variants(order))


def find_variant(variants: List[GridVariant], variant_id: str) -> Optional[GridVariant]:
    for variant in variants:
        if variant.id == variant_id:
            return variant
    return None
