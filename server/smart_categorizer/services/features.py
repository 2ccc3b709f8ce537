"""
Feature Extraction Service

Turns a raw transaction description (plus its amount) into the flat list of
string features consumed by the statistical classifier:

1. Word stems (tokenized, stop words removed, Porter-stemmed)
2. Merchant tag extracted with an ordered list of regex rules
3. Amount and description-length buckets
4. Domain tags for local banking operations and document numbers
5. Named-entity tags (places and organizations) from a spaCy pipeline

Every step is isolated: a failing step is logged and contributes nothing,
the remaining steps still run.
"""

import logging
import math
import re
from typing import Any, Callable, Iterable, List, Optional, Tuple

import spacy
from nltk.stem import PorterStemmer
from nltk.tokenize import RegexpTokenizer

logger = logging.getLogger(__name__)

MAX_TOKEN_LENGTH = 50
MIN_MERCHANT_LENGTH = 3

PORTUGUESE_STOP_WORDS = frozenset([
    "de", "da", "do", "das", "dos", "em", "na", "no", "nas", "nos", "para", "por",
    "com", "sem", "sob", "sobre", "entre", "durante", "antes", "depois", "ate",
    "desde", "contra", "segundo", "conforme", "perante", "mediante", "excepto",
    "salvo", "menos", "fora", "afora", "alem", "aquem", "atraves", "junto", "perto",
    "longe", "dentro", "cima", "baixo", "frente", "tras", "lado", "vez", "vezes",
])

# Tried in order, first match wins. Earlier generic rules shadow later ones.
MERCHANT_PATTERNS = [
    re.compile(r"^(?P<merchant>[A-Z]+[A-Z\s&]+?)[\s*]"),
    re.compile(r"(?P<merchant>[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*)"),
    re.compile(r"^(?P<merchant>[\w\s]+?)(?:\s+\d+|\s*\*|$)"),
    re.compile(r"^(?P<merchant>[A-ZÁÇÉÍÓÚÂÊÎÔÛÀÈÌÒÙÃ]+[\w\s&]*?)[\s*]"),
    re.compile(r"(?P<merchant>TEF|PIX|TRANSFERENCIA|SAQUE|DEPOSITO)", re.IGNORECASE),
]

# Company suffixes, payment prefixes and dated descriptions
SECONDARY_MERCHANT_PATTERNS = [
    re.compile(r"^(?P<merchant>.*?)\s+(?:LTDA|S/A|SA|ME|EPP)(?:\s|$)", re.IGNORECASE),
    re.compile(r"^(?:PGTO|PAG|COMPRA)\s+(?P<merchant>.*)", re.IGNORECASE),
    re.compile(r"^(?P<merchant>.*?)\s+(?:\d{2}/\d{2}|\d{4})"),
]

BANKING_TERMS: Tuple[Tuple[str, str], ...] = (
    ("tef", "banking_tef"),
    ("pix", "banking_pix"),
    ("transferencia", "banking_transfer"),
    ("saque", "banking_withdrawal"),
    ("deposito", "banking_deposit"),
    ("pgto", "payment"),
    ("pagamento", "payment"),
    ("compra", "purchase"),
    ("debito", "debit"),
    ("credito", "credit"),
)

CPF_PATTERN = re.compile(r"\d{3}\.\d{3}\.\d{3}-\d{2}")
CNPJ_PATTERN = re.compile(r"\d{2}\.\d{3}\.\d{3}/\d{4}-\d{2}")

ENTITY_PREFIXES = {
    "GPE": "place",
    "LOC": "place",
    "FAC": "place",
    "ORG": "org",
}


def extract_merchant(description: str) -> Optional[str]:
    """
    Extract a merchant tag from a description.

    Args:
        description: Transaction description (callers pass it lower-cased)

    Returns:
        Trimmed, lower-cased merchant tag, or None if no rule yields one
        of at least MIN_MERCHANT_LENGTH characters
    """
    if not description:
        return None

    for pattern in MERCHANT_PATTERNS + SECONDARY_MERCHANT_PATTERNS:
        match = pattern.search(description)
        if not match:
            continue
        candidate = match.group("merchant")
        if candidate and len(candidate) >= MIN_MERCHANT_LENGTH and candidate.strip():
            return candidate.strip().lower()

    return None


def amount_bucket(amount: float) -> str:
    """Map a positive amount to its bucket feature"""
    if amount <= 10:
        return "amount_very_small"
    if amount <= 50:
        return "amount_small"
    if amount <= 200:
        return "amount_medium"
    if amount <= 1000:
        return "amount_large"
    return "amount_very_large"


def length_bucket(description: str) -> str:
    """Map a description to its length bucket feature"""
    length = len(description)
    if length <= 10:
        return "length_short"
    if length <= 30:
        return "length_medium"
    return "length_long"


def _is_usable_amount(amount: Any) -> bool:
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        return False
    return math.isfinite(amount) and amount > 0


class FeatureExtractor:
    """
    Stateless, deterministic feature extractor.

    The spaCy pipeline is loaded lazily on first use. Pass `entity_model=None`
    to disable entity features, or `nlp` to supply a ready pipeline.
    """

    def __init__(self, entity_model: Optional[str] = None, nlp: Optional[Callable] = None,
                 stop_words: Iterable[str] = PORTUGUESE_STOP_WORDS):
        self.tokenizer = RegexpTokenizer(r"\w+")
        self.stemmer = PorterStemmer()
        self.stop_words = frozenset(stop_words)
        self.entity_model = entity_model
        self._nlp = nlp
        self._entity_model_failed = False

    def tokenize(self, text: str) -> List[str]:
        """Split text into word tokens, falling back to whitespace splitting"""
        try:
            return self.tokenizer.tokenize(text) or []
        except Exception as e:
            logger.warning(f"Tokenizer failed, falling back to whitespace split: {e}")
            return [token for token in text.split() if token]

    def extract(self, description: str, amount: Any = 0) -> List[str]:
        """
        Extract classifier features from a description.

        Args:
            description: Raw transaction description
            amount: Transaction amount; only finite positive numbers add a bucket

        Returns:
            Ordered list of features (duplicates kept)
        """
        if not description or not isinstance(description, str):
            return []

        clean_desc = description.lower().strip()
        if not clean_desc:
            return []

        steps = (
            ("tokens", self._token_features),
            ("merchant", self._merchant_features),
            ("amount", self._amount_features),
            ("length", self._length_features),
            ("banking", self._banking_features),
            ("entities", self._entity_features),
        )

        features: List[str] = []
        for step_name, step in steps:
            try:
                features.extend(step(clean_desc, amount))
            except Exception as e:
                logger.warning(f"Feature step '{step_name}' failed for '{clean_desc}': {e}")

        return [feature for feature in features if feature]

    def _token_features(self, clean_desc: str, amount: Any) -> List[str]:
        tokens = self.tokenize(clean_desc)

        try:
            tokens = [token for token in tokens if token not in self.stop_words]
        except Exception as e:
            logger.warning(f"Stop word removal failed, keeping tokens: {e}")

        stems = []
        for token in tokens:
            try:
                stems.append(self.stemmer.stem(token))
            except Exception:
                stems.append(token)

        return [
            stem for stem in stems
            if isinstance(stem, str) and stem.strip() and len(stem) <= MAX_TOKEN_LENGTH
        ]

    def _merchant_features(self, clean_desc: str, amount: Any) -> List[str]:
        merchant = extract_merchant(clean_desc)
        return [f"merchant_{merchant}"] if merchant else []

    def _amount_features(self, clean_desc: str, amount: Any) -> List[str]:
        return [amount_bucket(amount)] if _is_usable_amount(amount) else []

    def _length_features(self, clean_desc: str, amount: Any) -> List[str]:
        return [length_bucket(clean_desc)]

    def _banking_features(self, clean_desc: str, amount: Any) -> List[str]:
        features = [feature for term, feature in BANKING_TERMS if term in clean_desc]

        if "r$" in clean_desc or "real" in clean_desc:
            features.append("currency_brl")
        if CPF_PATTERN.search(clean_desc):
            features.append("document_cpf")
        if CNPJ_PATTERN.search(clean_desc):
            features.append("document_cnpj")

        return features

    def _entity_features(self, clean_desc: str, amount: Any) -> List[str]:
        nlp = self._entity_pipeline()
        if nlp is None:
            return []

        features = []
        for ent in nlp(clean_desc).ents:
            prefix = ENTITY_PREFIXES.get(ent.label_)
            value = ent.text.strip().lower()
            if prefix and value:
                features.append(f"{prefix}_{value}")
        return features

    def _entity_pipeline(self) -> Optional[Callable]:
        if self._nlp is not None or not self.entity_model or self._entity_model_failed:
            return self._nlp

        try:
            self._nlp = spacy.load(self.entity_model)
            logger.info(f"Loaded spaCy pipeline '{self.entity_model}' for entity features")
        except OSError as e:
            self._entity_model_failed = True
            logger.warning(f"spaCy model '{self.entity_model}' not available, entity features disabled: {e}")

        return self._nlp
