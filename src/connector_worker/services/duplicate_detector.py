"""
Duplicate Detection Engine.

Three tiers, first match wins:
1. Exact window: same phone, same calendar day.
2. Extended window: same phone, order date within [-7, +1] days (5 most recent).
3. Fuzzy window: same day, first-name or address-prefix match (10 candidates),
   scored by normalized edit distance.
"""

import re
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from connector_api.config.constants import (
    EXACT_DUPLICATE_THRESHOLD,
    EXTENDED_WINDOW_CANDIDATES,
    EXTENDED_WINDOW_DAYS_AFTER,
    EXTENDED_WINDOW_DAYS_BEFORE,
    FLAG_WITH_NOTES_THRESHOLD,
    FUZZY_ADDRESS_PREFIX_LENGTH,
    FUZZY_MATCH_THRESHOLD,
    FUZZY_WINDOW_CANDIDATES,
    SIMILAR_DUPLICATE_THRESHOLD,
)
from connector_api.core.logger import setup_logger
from connector_api.db.base import utcnow
from connector_api.db.models import Order
from connector_worker.models.sheet_sync import (
    DetectionTier,
    DuplicateDetectionResult,
    DuplicateHandling,
    DuplicateResolution,
    DuplicateType,
    ResolutionAction,
    SheetOrder,
)
from connector_worker.repositories.base import OrderLookup
from connector_worker.services.order_validator import parse_order_date

logger = setup_logger(__name__)

# Field weights for the exact/similar score
PHONE_WEIGHT = 3
NAME_WEIGHT = 2
ADDRESS_WEIGHT = 2
PRODUCT_WEIGHT = 2
PRICE_WEIGHT = 1

# Field weights for the fuzzy score
FUZZY_NAME_WEIGHT = 3
FUZZY_ADDRESS_WEIGHT = 2
FUZZY_PRODUCT_WEIGHT = 2

ADDRESS_PARTIAL_PREFIX_LENGTH = 10
PRICE_TOLERANCE = 1.0

_PHONE_NOISE = re.compile(r"[\s\-().]")


def normalize_phone(phone: Optional[str]) -> str:
    """Strip spacing and punctuation so "06 12-34.56.78" matches "0612345678"."""
    return _PHONE_NOISE.sub("", phone or "")


def _normalize_text(text: Optional[str]) -> str:
    return " ".join((text or "").lower().split())


def levenshtein_distance(a: str, b: str) -> int:
    """Classic edit distance (insert/delete/substitute, cost 1)."""
    if len(a) < len(b):
        a, b = b, a
    if not b:
        return len(a)

    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            cost = 0 if char_a == char_b else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def string_similarity(a: Optional[str], b: Optional[str]) -> float:
    """1 - distance / max length, in [0, 1]; two empty strings are identical."""
    a, b = _normalize_text(a), _normalize_text(b)
    max_length = max(len(a), len(b))
    if max_length == 0:
        return 1.0
    return 1.0 - levenshtein_distance(a, b) / max_length


def calculate_similarity(order: SheetOrder, existing: Order) -> Tuple[float, List[str]]:
    """
    Weighted field agreement between a sheet row and an existing order.

    Returns (score in [0, 1], conflicting field names). Price only counts when
    the row has a non-zero price.
    """
    achieved = 0
    total = 0
    conflicts: List[str] = []

    # Phone
    total += PHONE_WEIGHT
    if normalize_phone(existing.customer.phone) == normalize_phone(order.phone):
        achieved += PHONE_WEIGHT
    else:
        conflicts.append("phone")

    # Customer name: exact, or first token contained either way
    total += NAME_WEIGHT
    sheet_name = _normalize_text(order.customer_name)
    existing_name = _normalize_text(existing.customer.full_name)
    if sheet_name == existing_name:
        achieved += NAME_WEIGHT
    else:
        sheet_first = sheet_name.split(" ")[0] if sheet_name else ""
        existing_first = existing_name.split(" ")[0] if existing_name else ""
        if (sheet_first and sheet_first in existing_name) or (existing_first and existing_first in sheet_name):
            achieved += NAME_WEIGHT // 2
        else:
            conflicts.append("customerName")

    # Address: exact, or existing address contains the row's first characters
    total += ADDRESS_WEIGHT
    sheet_address = _normalize_text(order.address)
    existing_address = _normalize_text(existing.shipping_address)
    if sheet_address == existing_address:
        achieved += ADDRESS_WEIGHT
    elif sheet_address and sheet_address[:ADDRESS_PARTIAL_PREFIX_LENGTH] in existing_address:
        achieved += ADDRESS_WEIGHT // 2
    else:
        conflicts.append("address")

    # Product name or SKU
    total += PRODUCT_WEIGHT
    product_name = _normalize_text(order.product_name)
    sku = (order.product_sku or "").strip()
    product_match = any(
        (item.product is not None)
        and (
            _normalize_text(item.product.name) == product_name
            or (sku and item.product.sku == sku)
        )
        for item in existing.items
    )
    if product_match:
        achieved += PRODUCT_WEIGHT
    else:
        conflicts.append("product")

    # Price (compared as order totals)
    if order.price:
        total += PRICE_WEIGHT
        sheet_total = order.price * max(order.product_quantity, 1)
        if abs((existing.total or 0.0) - sheet_total) < PRICE_TOLERANCE:
            achieved += PRICE_WEIGHT
        else:
            conflicts.append("price")

    return achieved / total, conflicts


def calculate_fuzzy_similarity(order: SheetOrder, existing: Order) -> float:
    """Edit-distance similarity on name (x3), address (x2) and best product name (x2)."""
    name_score = string_similarity(order.customer_name, existing.customer.full_name)
    address_score = string_similarity(order.address, existing.shipping_address)
    product_score = max(
        (string_similarity(order.product_name, item.product.name) for item in existing.items if item.product),
        default=0.0,
    )
    weighted = (
        name_score * FUZZY_NAME_WEIGHT
        + address_score * FUZZY_ADDRESS_WEIGHT
        + product_score * FUZZY_PRODUCT_WEIGHT
    )
    return weighted / (FUZZY_NAME_WEIGHT + FUZZY_ADDRESS_WEIGHT + FUZZY_PRODUCT_WEIGHT)


def _summarize(existing: Order) -> str:
    return f"{existing.customer.full_name} - {existing.customer.phone} - {existing.order_date.date().isoformat()}"


class DuplicateDetector:
    """Matches sheet rows against existing orders of the same organization."""

    def __init__(self, lookup: OrderLookup):
        self.lookup = lookup

    async def detect(self, order: SheetOrder, organization_id: str) -> DuplicateDetectionResult:
        order_date = parse_order_date(order.date) or utcnow()
        day_start = datetime(order_date.year, order_date.month, order_date.day)
        day_end = day_start + timedelta(days=1)
        phone = normalize_phone(order.phone)

        if phone:
            # Tier 1: same phone, same day
            same_day = await self.lookup.find_by_phone(organization_id, phone, day_start, day_end)
            if same_day:
                existing, score, conflicts = self._best_match(order, same_day)
                duplicate_type = DuplicateType.EXACT if score >= EXACT_DUPLICATE_THRESHOLD else DuplicateType.SIMILAR
                return self._result(existing, score, conflicts, duplicate_type, DetectionTier.EXACT_WINDOW)

            # Tier 2: same phone, around the order date
            nearby = await self.lookup.find_by_phone(
                organization_id,
                phone,
                day_start - timedelta(days=EXTENDED_WINDOW_DAYS_BEFORE),
                day_end + timedelta(days=EXTENDED_WINDOW_DAYS_AFTER),
                limit=EXTENDED_WINDOW_CANDIDATES,
            )
            if nearby:
                existing, score, conflicts = self._best_match(order, nearby)
                if score >= SIMILAR_DUPLICATE_THRESHOLD:
                    duplicate_type = DuplicateType.EXACT if score >= EXACT_DUPLICATE_THRESHOLD else DuplicateType.SIMILAR
                    return self._result(existing, score, conflicts, duplicate_type, DetectionTier.EXTENDED_WINDOW)

        # Tier 3: same day, fuzzy name/address
        first_name = order.customer_name.split(" ")[0] if order.customer_name else ""
        address_prefix = (order.address or "")[:FUZZY_ADDRESS_PREFIX_LENGTH]
        candidates = await self.lookup.find_fuzzy_candidates(
            organization_id,
            day_start,
            day_end,
            first_name,
            address_prefix,
            limit=FUZZY_WINDOW_CANDIDATES,
        )
        best: Optional[Order] = None
        best_score = 0.0
        for candidate in candidates:
            score = calculate_fuzzy_similarity(order, candidate)
            if score > best_score:
                best, best_score = candidate, score

        if best is not None and best_score >= FUZZY_MATCH_THRESHOLD:
            _, conflicts = calculate_similarity(order, best)
            return self._result(best, best_score, conflicts, DuplicateType.SIMILAR, DetectionTier.FUZZY_WINDOW)

        return DuplicateDetectionResult.none()

    def _best_match(self, order: SheetOrder, candidates: List[Order]) -> Tuple[Order, float, List[str]]:
        best = None
        for candidate in candidates:
            score, conflicts = calculate_similarity(order, candidate)
            if best is None or score > best[1]:
                best = (candidate, score, conflicts)
        return best

    def _result(
        self,
        existing: Order,
        score: float,
        conflicts: List[str],
        duplicate_type: DuplicateType,
        tier: DetectionTier,
    ) -> DuplicateDetectionResult:
        return DuplicateDetectionResult(
            is_duplicate=True,
            duplicate_type=duplicate_type,
            existing_order_id=existing.id,
            existing_order_number=existing.order_number,
            similarity_score=score,
            conflicting_fields=conflicts,
            detection_tier=tier,
            existing_summary=_summarize(existing),
        )


def build_duplicate_notes(order: SheetOrder, result: DuplicateDetectionResult) -> str:
    """Human-readable note attached to a flagged order."""
    percent = round(result.similarity_score * 100)
    return "\n".join([
        f"Potential duplicate of Order {result.existing_order_number} ({percent}% similarity).",
        f"Existing order: {result.existing_summary}",
        f"Sheet order: {order.customer_name} - {order.phone} - {order.date}",
        f"Conflicting fields: {', '.join(result.conflicting_fields) or 'none'}",
        f"Detection type: {result.detection_tier.value if result.detection_tier else 'unknown'}",
        f"Detected at: {utcnow().isoformat()}",
    ])


def resolve_duplicate(
    order: SheetOrder,
    result: DuplicateDetectionResult,
    handling: DuplicateHandling = DuplicateHandling.SKIP,
) -> DuplicateResolution:
    """Decide what to do with a row given its detection result."""
    if not result.is_duplicate:
        return DuplicateResolution(action=ResolutionAction.CREATE)

    score = result.similarity_score
    percent = round(score * 100)

    if handling == DuplicateHandling.CREATE:
        logger.info(f"Row {order.row_number} resembles {result.existing_order_number} ({percent}%), creating anyway")
        return DuplicateResolution(action=ResolutionAction.CREATE)

    if (
        handling == DuplicateHandling.SKIP
        and result.duplicate_type == DuplicateType.EXACT
        and score >= EXACT_DUPLICATE_THRESHOLD
    ):
        return DuplicateResolution(
            action=ResolutionAction.SKIP,
            reason=f"Exact duplicate found: Order {result.existing_order_number} ({percent}% match)",
        )

    if score >= SIMILAR_DUPLICATE_THRESHOLD:
        tier = "high" if score >= FLAG_WITH_NOTES_THRESHOLD else "moderate"
        return DuplicateResolution(
            action=ResolutionAction.CREATE,
            flag=True,
            reason=f"{tier.capitalize()} similarity to Order {result.existing_order_number} ({percent}%)",
            notes=build_duplicate_notes(order, result),
        )

    logger.info(f"Row {order.row_number} weakly resembles {result.existing_order_number} ({percent}%), creating normally")
    return DuplicateResolution(action=ResolutionAction.CREATE)
