"""Ticker normalisation: company names and loose mentions to ticker symbols."""

import re

import structlog

logger = structlog.get_logger()

COMPANY_TO_TICKER = {
    # Tech
    "apple": "AAPL",
    "microsoft": "MSFT",
    "alphabet": "GOOGL",
    "google": "GOOGL",
    "amazon": "AMZN",
    "amazon.com": "AMZN",
    "meta": "META",
    "meta platforms": "META",
    "facebook": "META",
    "tesla": "TSLA",
    "nvidia": "NVDA",
    # Finance
    "jpmorgan": "JPM",
    "jpmorgan chase": "JPM",
    "jp morgan": "JPM",
    "bank of america": "BAC",
    "wells fargo": "WFC",
    "goldman sachs": "GS",
    "morgan stanley": "MS",
    "citigroup": "C",
    # Retail
    "walmart": "WMT",
    "wal-mart": "WMT",
    "target": "TGT",
    "costco": "COST",
    "costco wholesale": "COST",
    "home depot": "HD",
    "the home depot": "HD",
    # Consumer
    "mcdonalds": "MCD",
    "mcdonald's": "MCD",
    "coca-cola": "KO",
    "coca cola": "KO",
    "pepsi": "PEP",
    "pepsico": "PEP",
    "nike": "NKE",
    "procter & gamble": "PG",
    "procter and gamble": "PG",
    # Healthcare
    "johnson & johnson": "JNJ",
    "johnson and johnson": "JNJ",
    "pfizer": "PFE",
    "merck": "MRK",
    "abbvie": "ABBV",
    "unitedhealth": "UNH",
    "unitedhealth group": "UNH",
    # Industrials
    "boeing": "BA",
    "caterpillar": "CAT",
    "3m": "MMM",
    "general electric": "GE",
    # Telecom
    "verizon": "VZ",
    "at&t": "T",
    "t-mobile": "TMUS",
    # Payments
    "visa": "V",
    "mastercard": "MA",
    "paypal": "PYPL",
    # Media
    "disney": "DIS",
    "walt disney": "DIS",
    "netflix": "NFLX",
    "comcast": "CMCSA",
    # Energy
    "exxon": "XOM",
    "exxon mobil": "XOM",
    "exxonmobil": "XOM",
    "chevron": "CVX",
    "conocophillips": "COP",
}

# Uppercase words that are almost never tickers in chat text
NON_TICKERS = frozenset(
    {
        "A", "I", "AN", "AM", "AS", "AT", "BE", "BY", "DO", "GO", "IF", "IN", "IS", "IT",
        "ME", "MY", "NO", "OF", "OK", "ON", "OR", "SO", "TO", "UP", "US", "WE",
        "AND", "ARE", "BUT", "CAN", "FOR", "HOW", "NOT", "THE", "WAS", "WHO", "WHY", "YOU",
        "ALL", "ANY", "NEW", "NOW", "OUT", "PER", "TOP",
        "USD", "EUR", "GBP", "CEO", "CFO", "CTO", "EPS", "PE", "RSI", "ETF", "IPO",
        "YTD", "QOQ", "YOY", "ATH", "AI", "API", "GDP", "CPI", "SEC", "FED", "NYSE", "FAQ",
        "TOTAL", "VALUE", "NOTE", "PRICE", "STOCK", "SHARE", "CASH",
    }
)

_AMBIGUOUS_NAMES = frozenset({"target", "visa", "meta", "3m"})

_SUFFIX = re.compile(r"\s+(inc\.?|corp\.?|corporation|co\.?|ltd\.?|llc|plc|group)$", re.IGNORECASE)
_TICKER_SHAPE = re.compile(r"^[A-Z]{1,5}$")
_CASHTAG = re.compile(r"\$([A-Za-z]{1,5})\b")
_UPPER_WORD = re.compile(r"\b([A-Z]{2,5})\b")


def is_plausible_ticker(token: str) -> bool:
    return bool(_TICKER_SHAPE.match(token)) and token not in NON_TICKERS


class TickerNormalizer:
    """Maps tickers or company names to ticker symbols."""

    def __init__(self, extra_names: dict[str, str] | None = None):
        self.company_to_ticker = {**COMPANY_TO_TICKER, **{k.lower(): v for k, v in (extra_names or {}).items()}}
        # Common English words are only honoured by normalize(), not in free text
        names = sorted(
            (n for n in self.company_to_ticker if n not in _AMBIGUOUS_NAMES), key=len, reverse=True
        )
        self._name_pattern = re.compile(
            r"(?<![\w&])(" + "|".join(re.escape(n) for n in names) + r")(?![\w&])", re.IGNORECASE
        )

    def normalize(self, value: str | None) -> str | None:
        if not value or not isinstance(value, str):
            return None
        cleaned = value.strip()
        if _TICKER_SHAPE.match(cleaned):
            return cleaned

        lowered = cleaned.lower()
        ticker = self.company_to_ticker.get(lowered)
        if ticker:
            return ticker

        ticker = self.company_to_ticker.get(_SUFFIX.sub("", lowered).strip())
        if ticker:
            return ticker

        if re.match(r"^[A-Za-z]{2,5}$", cleaned):
            return cleaned.upper()

        logger.debug("tickers.unresolved", value=value)
        return None

    def normalize_all(self, values) -> list[str]:
        if not isinstance(values, (list, tuple, set)):
            return []
        out = []
        for value in values:
            ticker = self.normalize(value)
            if ticker and ticker not in out:
                out.append(ticker)
        return out

    def find_in_text(self, text: str) -> list[str]:
        """Tickers mentioned in free text: cashtags, uppercase symbols, company names."""
        if not text:
            return []
        found: list[str] = []

        def add(ticker: str):
            if ticker not in found:
                found.append(ticker)

        for match in _CASHTAG.finditer(text):
            # "$150" is a price, "$aapl" a cashtag
            add(match.group(1).upper())
        for match in _UPPER_WORD.finditer(text):
            if is_plausible_ticker(match.group(1)):
                add(match.group(1))
        for match in self._name_pattern.finditer(text):
            add(self.company_to_ticker[match.group(1).lower()])
        return found
