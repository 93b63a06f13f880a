"""
Regex-based Extractor for transaction emails.

Turns one Gmail message into an ExtractedFact (amount, merchant, date,
payment mode, confidence). Works WITHOUT any LLM/API - pure pattern
matching, no I/O, same input always gives the same output.

Each field is driven by an ordered list of Rule(pattern, extract)
pairs. Rules are tried top to bottom and, inside a rule, matches are
tried left to right; the first extract() that returns something wins.
New rules can be added or reordered without touching the evaluation.
"""

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, List, Optional


MAX_AMOUNT = Decimal("10000000")

MERCHANT_CONFIDENCE = 0.85
NO_MERCHANT_CONFIDENCE = 0.60

# Below this the record is flagged for the user to double-check
REVIEW_THRESHOLD = 0.7


class PaymentMode(str, Enum):
    """How the transaction was paid (values match the ledger's payment_mode)."""
    UPI = "UPI"
    CARD = "Card"
    BANK_TRANSFER = "Bank Transfer"
    CASH = "Cash"
    OTHER = "Other"


@dataclass(frozen=True)
class Merchant:
    name: str
    category: str


@dataclass
class CandidateMessage:
    """A Gmail message that might describe a transaction (lives for one run)."""
    message_id: str
    thread_id: Optional[str]
    subject: str
    sender: str
    received_at: datetime  # Header date, or fetch time if the header is unusable
    body: str
    snippet: str = ""


@dataclass
class ExtractedFact:
    """Structured transaction data derived from one CandidateMessage."""
    amount: Optional[Decimal]
    merchant: Optional[Merchant]
    transaction_date: date
    payment_mode: PaymentMode
    confidence: float

    @property
    def category(self) -> str:
        return self.merchant.category if self.merchant else "Other"

    @property
    def merchant_name(self) -> Optional[str]:
        return self.merchant.name if self.merchant else None

    @property
    def needs_review(self) -> bool:
        # Display signal only: never used to gate matching or ledger inserts
        return self.confidence < REVIEW_THRESHOLD


@dataclass(frozen=True)
class Rule:
    """One prioritized extraction rule."""
    pattern: re.Pattern
    extract: Callable[[re.Match], Any]
    name: str = field(default="", compare=False)


def first_match(rules: List[Rule], text: str) -> Any:
    """
    Evaluate rules in order with first-match-wins semantics.

    Returns:
        The first non-None value an extractor produces, or None
    """
    if not text:
        return None

    for rule in rules:
        for match in rule.pattern.finditer(text):
            value = rule.extract(match)
            if value is not None:
                return value

    return None


# ============ AMOUNT ============

_CURRENCY = r'(?:₹|\bRs\.?|\bINR)'
_NUMBER = r'(\d[\d,]*(?:\.\d{1,2})?)'


def _parse_amount(match: re.Match) -> Optional[Decimal]:
    """Parse the captured number; only amounts in (0, 10,000,000) count."""
    raw = match.group(1).replace(",", "")
    try:
        amount = Decimal(raw)
    except InvalidOperation:
        return None

    if 0 < amount < MAX_AMOUNT:
        return amount.quantize(Decimal("0.01"))
    return None


AMOUNT_RULES = [
    # ₹1,249.00 / Rs. 500 / INR 99
    Rule(re.compile(_CURRENCY + r'\s*' + _NUMBER, re.IGNORECASE), _parse_amount, "currency-prefixed"),
    # Amount: 1,249.00 / Total ₹ 99 / debited 500
    Rule(
        re.compile(r'\b(?:amount|total|paid|charged|debited)\b\s*:?\s*' + _CURRENCY + r'?\s*' + _NUMBER, re.IGNORECASE),
        _parse_amount,
        "labelled"
    ),
    # 1,249.00 INR / 500 Rs
    Rule(re.compile(_NUMBER + r'\s*' + _CURRENCY, re.IGNORECASE), _parse_amount, "currency-suffixed"),
]


# ============ MERCHANT ============

def _brand(pattern: str, name: str, category: str) -> Rule:
    merchant = Merchant(name, category)
    return Rule(re.compile(pattern, re.IGNORECASE), lambda m: merchant, name)


def _upi_beneficiary(match: re.Match) -> Merchant:
    return Merchant(re.sub(r'\s+', ' ', match.group(1)).strip(), "Other")


def _bank_fallback(match: re.Match) -> Merchant:
    return Merchant(f"UPI via {match.group(1).upper()} Bank", "Other")


MERCHANT_RULES = [
    # E-commerce
    _brand(r'\bamazon\b', 'Amazon', 'Shopping'),
    _brand(r'\bflipkart\b', 'Flipkart', 'Shopping'),
    # Food delivery & groceries
    _brand(r'\bswiggy\b', 'Swiggy', 'Food'),
    _brand(r'\bzomato\b', 'Zomato', 'Food'),
    # Transport
    _brand(r'\buber\b', 'Uber', 'Transport'),
    _brand(r'\bola\b', 'Ola', 'Transport'),
    _brand(r'\brapido\b', 'Rapido', 'Transport'),
    # Entertainment
    _brand(r'\bnetflix\b', 'Netflix', 'Entertainment'),
    _brand(r'\bspotify\b', 'Spotify', 'Entertainment'),
    _brand(r'\bhotstar\b', 'Disney+ Hotstar', 'Entertainment'),
    _brand(r'\bprime\s*video\b', 'Prime Video', 'Entertainment'),
    _brand(r'\byoutube\s*premium\b', 'YouTube Premium', 'Entertainment'),
    # Telecom & utilities
    _brand(r'\bairtel\b', 'Airtel', 'Utilities'),
    _brand(r'\bjio\b', 'Jio', 'Utilities'),
    _brand(r'\bvodafone\b', 'Vi', 'Utilities'),
    _brand(r'\bbsnl\b', 'BSNL', 'Utilities'),
    _brand(r'\belectricity\b|\bbescom\b|\btata\s*power\b', 'Electricity', 'Utilities'),
    _brand(r'\bgas\s*bill\b|\bindane\b|\bbharat\s*gas\b', 'Gas', 'Utilities'),
    # Payment gateways
    _brand(r'\brazorpay\b', 'Razorpay Payment', 'Other'),
    _brand(r'\bstripe\b', 'Stripe Payment', 'Other'),
    _brand(r'\bgoogle\s*(?:play|one|cloud)\b', 'Google', 'Entertainment'),
    _brand(r'\bapple\b', 'Apple', 'Shopping'),
    _brand(r'\bmyntra\b', 'Myntra', 'Shopping'),
    _brand(r'\bajio\b', 'AJIO', 'Shopping'),
    _brand(r'\bmeesho\b', 'Meesho', 'Shopping'),
    _brand(r'\bnykaa\b', 'Nykaa', 'Shopping'),
    _brand(r'\bbigbasket\b', 'BigBasket', 'Food'),
    _brand(r'\bgrofers\b|\bblinkit\b', 'Blinkit', 'Food'),
    _brand(r'\bzepto\b', 'Zepto', 'Food'),
    _brand(r'\bdunzo\b', 'Dunzo', 'Food'),
    # Travel
    _brand(r'\birctc\b', 'IRCTC', 'Transport'),
    _brand(r'\bmakemytrip\b', 'MakeMyTrip', 'Transport'),
    _brand(r'\bgoibibo\b', 'Goibibo', 'Transport'),
    # Insurance
    _brand(r'\blic\b|\blife\s*insurance\b', 'LIC', 'Insurance'),
    _brand(r'\backo\b', 'Acko', 'Insurance'),
    _brand(r'\bhdfc\s*ergo\b', 'HDFC Ergo', 'Insurance'),
    _brand(r'\bicici\s*lombard\b', 'ICICI Lombard', 'Insurance'),
    # Bank alerts: "... to VPA shop@okaxis SHARMA STORES on 12-01-25"
    Rule(
        re.compile(r'\bVPA\s+[\w.\-]+@[\w.\-]+\s+([A-Z][A-Z ]{2,40}?)\s+on\b'),
        _upi_beneficiary,
        "upi-beneficiary"
    ),
    Rule(
        re.compile(
            r'\b(hdfc|icici|sbi|axis|kotak|yes|idfc|rbl|federal|indusind|pnb|canara|union)\s*bank\b',
            re.IGNORECASE
        ),
        _bank_fallback,
        "bank-alert"
    ),
]


# ============ DATE ============

_MONTHS = {
    'jan': 1, 'feb': 2, 'mar': 3, 'apr': 4, 'may': 5, 'jun': 6,
    'jul': 7, 'aug': 8, 'sep': 9, 'oct': 10, 'nov': 11, 'dec': 12
}
_MONTH_NAME = r'(Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec)[a-z]*\.?'
_YEAR = r'(\d{4}|\d{2})'


def _year(raw: str) -> int:
    year = int(raw)
    return year + 2000 if year < 100 else year


def _safe_date(year: int, month: int, day: int) -> Optional[date]:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _numeric_date(match: re.Match) -> Optional[date]:
    day, month, year = match.groups()
    return _safe_date(_year(year), int(month), int(day))


def _day_month_year(match: re.Match) -> Optional[date]:
    day, month, year = match.groups()
    return _safe_date(_year(year), _MONTHS[month[:3].lower()], int(day))


def _month_day_year(match: re.Match) -> Optional[date]:
    month, day, year = match.groups()
    return _safe_date(_year(year), _MONTHS[month[:3].lower()], int(day))


DATE_RULES = [
    # 12/01/2025 or 12-01-25 (day first)
    Rule(re.compile(r'\b(\d{1,2})[/\-](\d{1,2})[/\-]' + _YEAR + r'\b'), _numeric_date, "numeric"),
    # 12 Jan 2025 / 12th January 2025
    Rule(
        re.compile(r'\b(\d{1,2})(?:st|nd|rd|th)?\s+' + _MONTH_NAME + r',?\s+' + _YEAR + r'\b', re.IGNORECASE),
        _day_month_year,
        "day-month-year"
    ),
    # January 12, 2025
    Rule(
        re.compile(r'\b' + _MONTH_NAME + r'\s+(\d{1,2})(?:st|nd|rd|th)?,?\s+' + _YEAR + r'\b', re.IGNORECASE),
        _month_day_year,
        "month-day-year"
    ),
]


# ============ PAYMENT MODE ============

def _mode(pattern: str, mode: PaymentMode) -> Rule:
    return Rule(re.compile(pattern, re.IGNORECASE), lambda m: mode, mode.value)


PAYMENT_MODE_RULES = [
    _mode(r'\bupi\b|\bvpa\b|\bgpay\b|phonepe|paytm|google\s*pay|\bbhim\b', PaymentMode.UPI),
    _mode(r'credit\s*card|debit\s*card|\bvisa\b|mastercard|\bamex\b|\brupay\b|card\s*ending', PaymentMode.CARD),
    _mode(r'net\s*banking|bank\s*transfer|\bneft\b|\bimps\b|\brtgs\b', PaymentMode.BANK_TRANSFER),
    _mode(r'cash\s*on\s*delivery|\bcod\b|paid\s+(?:in|by)\s+cash', PaymentMode.CASH),
]


# ============ FIELD EXTRACTORS ============

def extract_amount(text: str) -> Optional[Decimal]:
    """First sane amount from the highest-priority rule that finds one."""
    return first_match(AMOUNT_RULES, text)


def extract_merchant(text: str) -> Optional[Merchant]:
    """First known brand (or bank-alert beneficiary) in the text."""
    return first_match(MERCHANT_RULES, text)


def extract_date(text: str, fallback: date) -> date:
    """First date that parses, else the message's own date."""
    return first_match(DATE_RULES, text) or fallback


def extract_payment_mode(text: str) -> PaymentMode:
    return first_match(PAYMENT_MODE_RULES, text) or PaymentMode.OTHER


def build_text(candidate: CandidateMessage) -> str:
    return f"{candidate.subject} {candidate.body} {candidate.sender}"


def extract(candidate: CandidateMessage) -> ExtractedFact:
    """
    Extract transaction facts from one message.

    Args:
        candidate: Message with cleaned body text

    Returns:
        ExtractedFact; amount is None when the message has no usable amount
        and must then be skipped by the caller
    """
    text = build_text(candidate)
    merchant = extract_merchant(text)

    return ExtractedFact(
        amount=extract_amount(text),
        merchant=merchant,
        transaction_date=extract_date(text, candidate.received_at.date()),
        payment_mode=extract_payment_mode(text),
        confidence=MERCHANT_CONFIDENCE if merchant else NO_MERCHANT_CONFIDENCE
    )
