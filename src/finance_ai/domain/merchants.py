import hashlib
import re
import unicodedata

from finance_ai.models import CacheKey

_NOISE_PATTERNS = (
    re.compile(r"\bmp\b\*?", re.IGNORECASE),
    re.compile(r"\*+"),
    re.compile(r"txn\d+", re.IGNORECASE),
    re.compile(r"#[0-9]+"),
)
_NON_WORD = re.compile(r"[^\w\s]|_")
_SPACES = re.compile(r"\s+")

CANONICAL_MERCHANTS: dict[str, str] = {
    "mercadopago": "Mercado Pago",
    "mercado pago": "Mercado Pago",
    "meli": "Mercado Libre",
    "mercado libre": "Mercado Libre",
    "carrefour": "Carrefour",
    "jumbo": "Jumbo",
    "disco": "Disco",
    "dia": "DIA",
    "coto": "Coto",
    "vea": "Vea",
    "chango mas": "Chango Más",
    "uber": "Uber",
    "cabify": "Cabify",
    "ypf": "YPF",
    "axion": "Axion",
    "puma": "Puma",
    "shell": "Shell",
    "sube": "SUBE",
    "edenor": "Edenor",
    "edesur": "Edesur",
    "epe": "EPE",
    "epec": "EPEC",
    "aysa": "AySA",
    "aguas santafesinas": "ASSA",
    "claro": "Claro",
    "personal": "Personal",
    "movistar": "Movistar",
    "fibertel": "Fibertel",
    "flow": "Flow",
    "netflix": "Netflix",
    "spotify": "Spotify",
}


def strip_accents(raw: str) -> str:
    decomposed = unicodedata.normalize("NFKD", raw)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def fold_text(raw: str) -> str:
    """Lowercase, strip accents and punctuation, collapse whitespace."""
    text = strip_accents(raw.lower())
    text = _NON_WORD.sub(" ", text)
    return _SPACES.sub(" ", text).strip()


def normalize_merchant(raw: str | None) -> str:
    if not raw:
        return ""
    text = raw
    for pattern in _NOISE_PATTERNS:
        text = pattern.sub(" ", text)
    text = fold_text(text)
    if not text:
        return ""

    if text in CANONICAL_MERCHANTS:
        return CANONICAL_MERCHANTS[text]
    padded = f" {text} "
    for alias, canonical in CANONICAL_MERCHANTS.items():
        if f" {alias} " in padded:
            return canonical

    return " ".join(word[0].upper() + word[1:] for word in text.split(" "))


def dedup_hash(
    amount: float,
    when: str | None = None,
    merchant_clean: str | None = None,
    account_last4: str | None = None,
    bank_message_id: str | None = None,
) -> str:
    """
    Fingerprint of a transaction occurrence.

    Broader than the cache key: repeat purchases at the same merchant on
    different dates or accounts must hash differently.
    """
    parts = [
        f"{abs(float(amount)):.2f}",
        (when or "")[:10],
        (merchant_clean or "").lower(),
        (account_last4 or "").strip(),
        (bank_message_id or "").strip(),
    ]
    return hashlib.sha1("|".join(parts).encode("utf-8")).hexdigest()


def cache_key(description: str, merchant_clean: str, amount: float, currency: str) -> CacheKey:
    return CacheKey(
        description=description,
        merchant=merchant_clean,
        amount=float(amount),
        currency=currency,
    )


def cache_key_digest(key: CacheKey) -> str:
    payload = key.model_dump_json()
    return hashlib.md5(payload.encode("utf-8")).hexdigest()
