"""
Normalization helpers shared by the parse and storage stages.
"""

import re
from decimal import Decimal, InvalidOperation
from typing import Tuple, Union

# Checked in order; multi-character prefixes first
CURRENCY_PREFIXES = [
    ('US $', 'USD'),
    ('AU $', 'AUD'),
    ('C $', 'CAD'),
    ('CA $', 'CAD'),
    ('NZ $', 'NZD'),
]

CURRENCY_SYMBOLS = {
    '$': 'USD',
    '€': 'EUR',
    '£': 'GBP',
    '¥': 'JPY',
    '₹': 'INR',
}

ISO_CODES = {
    'USD', 'EUR', 'GBP', 'JPY', 'INR', 'CAD', 'AUD', 'NZD', 'CHF', 'CNY',
    'SEK', 'NOK', 'DKK', 'PLN', 'MXN', 'BRL', 'HKD', 'SGD',
}
ISO_CODE_PATTERN = re.compile(r'\b(' + '|'.join(sorted(ISO_CODES)) + r')\b', re.IGNORECASE)
RANGE_PATTERN = re.compile(r'\s+(?:to|-|–)\s+', re.IGNORECASE)
# Thousands grouped with one separator ("1 299", "1.234,56") or a plain
# number; trailing counts such as "2 left" are never merged into the amount
NUMBER_PATTERN = re.compile(r"-?\d{1,3}([ ,.])\d{3}(?:\1\d{3})*(?:[.,]\d+)?(?!\d)|-?\d+(?:[.,]\d+)?")
SYMBOL_PATTERN = re.compile('[' + re.escape(''.join(CURRENCY_SYMBOLS)) + ']')


def normalize_whitespace(text: str) -> str:
    """Trim and collapse runs of whitespace."""
    return ' '.join(text.split())


def detect_currency(text: str, default_currency: str = 'USD') -> str:
    """Currency code from an eBay-style prefix, a symbol or an ISO code."""
    upper = normalize_whitespace(text).upper()

    for prefix, code in CURRENCY_PREFIXES:
        if upper.startswith(prefix):
            return code

    match = ISO_CODE_PATTERN.search(upper)
    if match:
        return match.group(1).upper()

    for symbol, code in CURRENCY_SYMBOLS.items():
        if symbol in text:
            return code

    return default_currency


def strip_currency_symbols(text: str) -> str:
    """Remove currency symbols, prefixes and ISO codes, leaving the amount."""
    cleaned = normalize_whitespace(text)
    for prefix, _ in CURRENCY_PREFIXES:
        if cleaned.upper().startswith(prefix):
            cleaned = cleaned[len(prefix):]
            break
    cleaned = SYMBOL_PATTERN.sub('', cleaned)
    cleaned = ISO_CODE_PATTERN.sub('', cleaned)
    return cleaned.strip()


def _to_decimal(number: str) -> Decimal:
    number = re.sub(r'\s', '', number)

    if ',' in number and '.' in number:
        # Whichever separator comes last is the decimal point
        if number.rfind(',') > number.rfind('.'):
            number = number.replace('.', '').replace(',', '.')
        else:
            number = number.replace(',', '')
    elif ',' in number:
        head, _, tail = number.rpartition(',')
        if number.count(',') == 1 and 1 <= len(tail) <= 2:
            number = f"{head}.{tail}"
        else:
            number = number.replace(',', '')
    elif number.count('.') > 1:
        number = number.replace('.', '')

    number = number.rstrip('.')
    try:
        return Decimal(number)
    except InvalidOperation:
        raise ValueError(f"Not a number: {number!r}")


def parse_price(value: Union[str, int, float, Decimal],
                default_currency: str = 'USD') -> Tuple[Decimal, str]:
    """
    Parse a displayed price into (amount, currency).

    Ranges such as "$10.00 to $20.00" resolve to the lower bound.

    Raises:
        ValueError: If no amount can be found
    """
    if isinstance(value, Decimal):
        return value, default_currency
    if isinstance(value, (int, float)):
        return Decimal(str(value)), default_currency
    if value is None:
        raise ValueError("Missing price")

    text = normalize_whitespace(str(value))
    if not text:
        raise ValueError("Empty price")

    text = RANGE_PATTERN.split(text, maxsplit=1)[0]
    currency = detect_currency(text, default_currency)

    match = NUMBER_PATTERN.search(strip_currency_symbols(text))
    if not match:
        raise ValueError(f"No amount in price {value!r}")

    return _to_decimal(match.group().strip()), currency
