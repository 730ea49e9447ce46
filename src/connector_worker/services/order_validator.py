"""Field validation for sheet orders (required fields, phone/price/date formats)."""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from connector_api.core.logger import setup_logger
from connector_worker.models.sheet_sync import PhoneFormat, SheetOrder, ValidationRules

logger = setup_logger(__name__)

NAME_MIN_LENGTH = 2
NAME_MAX_LENGTH = 100
PHONE_MIN_DIGITS = 7
PHONE_MAX_DIGITS = 15

MOROCCO_NATIONAL_PATTERN = re.compile(r"^[567]\d{8}$")
MOROCCO_PREFIXES = ("+212", "212", "0")
INTERNATIONAL_PATTERN = re.compile(r"^\+[1-9]\d{6,14}$")
ANY_PHONE_PATTERN = re.compile(r"^(\+?[1-9]\d{6,14}|0\d{8,9})$")
REPEATED_DIGITS_PATTERN = re.compile(r"(\d)\1{6,}")
SEQUENTIAL_RUNS = ("123456", "234567", "345678", "456789", "987654", "876543", "765432", "654321")
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y", "%m/%d/%Y", "%d-%m-%Y", "%Y/%m/%d", "%d.%m.%Y")


def parse_order_date(text: str) -> Optional[datetime]:
    """Parse a sheet date cell; ISO first, then common day/month layouts."""
    text = (text or "").strip()
    if not text:
        return None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        if parsed.tzinfo is not None:
            # Stored as naive UTC
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        return parsed
    except ValueError:
        pass
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None


@dataclass
class ValidationIssue:
    field: str
    message: str
    suggested_fix: Optional[str] = None


@dataclass
class ValidationResult:
    is_valid: bool
    errors: List[ValidationIssue] = field(default_factory=list)
    warnings: List[ValidationIssue] = field(default_factory=list)

    def summary(self) -> str:
        return "; ".join(f"{e.field}: {e.message}" for e in self.errors)


class OrderValidator:
    """Applies a spreadsheet's ValidationRules to parsed rows."""

    def validate(self, order: SheetOrder, rules: ValidationRules) -> ValidationResult:
        errors: List[ValidationIssue] = []
        warnings: List[ValidationIssue] = []

        self._validate_name(order.customer_name, errors)

        if rules.require_phone:
            self._validate_phone(order.phone, rules.phone_format, errors, warnings)

        if not order.address:
            errors.append(ValidationIssue("address", "Address is required", "Enter the delivery address"))
        if not order.city:
            errors.append(ValidationIssue("city", "City is required", "Enter the delivery city"))

        if rules.require_product:
            if not order.product_name:
                errors.append(ValidationIssue("product", "Product name is required", "Enter the product name"))
            if order.product_quantity < 1:
                errors.append(ValidationIssue("quantity", "Product quantity must be at least 1", "Enter a positive quantity"))

        if rules.require_price and rules.price_validation:
            self._validate_price(order.price, errors, warnings)

        self._validate_date(order.date, errors)

        if order.email and not EMAIL_PATTERN.match(order.email):
            warnings.append(ValidationIssue("email", "Email address looks invalid"))

        return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)

    def _validate_name(self, name: str, errors: List[ValidationIssue]):
        if not name:
            errors.append(ValidationIssue("customer_name", "Customer name is required", "Enter the customer's full name"))
        elif len(name) < NAME_MIN_LENGTH or len(name) > NAME_MAX_LENGTH:
            errors.append(ValidationIssue(
                "customer_name",
                f"Customer name must be between {NAME_MIN_LENGTH} and {NAME_MAX_LENGTH} characters",
            ))

    def _validate_phone(
        self,
        phone: str,
        phone_format: PhoneFormat,
        errors: List[ValidationIssue],
        warnings: List[ValidationIssue],
    ):
        if not phone:
            errors.append(ValidationIssue("phone", "Phone number is required", "Enter a valid phone number"))
            return

        cleaned = re.sub(r"[^\d+]", "", phone)
        digits = cleaned.lstrip("+")
        if len(digits) < PHONE_MIN_DIGITS or len(digits) > PHONE_MAX_DIGITS:
            errors.append(ValidationIssue(
                "phone",
                "Invalid phone number length",
                "Check phone number format (should be valid Morocco number)",
            ))
            return

        if phone_format == PhoneFormat.MOROCCO:
            national = cleaned
            for prefix in MOROCCO_PREFIXES:
                if national.startswith(prefix):
                    national = national[len(prefix):]
                    break
            if not MOROCCO_NATIONAL_PATTERN.match(national):
                errors.append(ValidationIssue(
                    "phone",
                    "Invalid Morocco phone number format",
                    "Use a Moroccan mobile or landline number, e.g. 0612345678 or +212612345678",
                ))
                return
        elif phone_format == PhoneFormat.INTERNATIONAL:
            if not INTERNATIONAL_PATTERN.match(cleaned):
                errors.append(ValidationIssue(
                    "phone",
                    "Invalid international phone number format",
                    "Use the international format, e.g. +212612345678",
                ))
                return
        elif not ANY_PHONE_PATTERN.match(cleaned):
            errors.append(ValidationIssue("phone", "Invalid phone number format", "Enter a valid phone number"))
            return

        if REPEATED_DIGITS_PATTERN.search(digits) or any(run in digits for run in SEQUENTIAL_RUNS):
            warnings.append(ValidationIssue("phone", "Phone number looks suspicious, please verify"))

    def _validate_price(self, price: float, errors: List[ValidationIssue], warnings: List[ValidationIssue]):
        if price is None:
            errors.append(ValidationIssue("price", "Price is required", "Enter a valid price"))
            return
        if price < 0:
            errors.append(ValidationIssue("price", "Price cannot be negative", "Enter a positive price value"))
            return
        if price == 0:
            warnings.append(ValidationIssue("price", "Price is zero, please verify"))
        if round(price, 2) != price:
            warnings.append(ValidationIssue("price", "Price has more than 2 decimal places"))

    def _validate_date(self, text: str, errors: List[ValidationIssue]):
        if not text:
            errors.append(ValidationIssue("date", "Order date is required", "Enter a valid date (YYYY-MM-DD format)"))
        elif parse_order_date(text) is None:
            errors.append(ValidationIssue("date", "Invalid date format", "Use YYYY-MM-DD format (e.g., 2024-01-15)"))
