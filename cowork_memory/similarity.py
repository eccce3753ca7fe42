"""
Similarity Engine - text normalization and embedding-free similarity.

Shared by the dedup gate, the hybrid scorer and consolidation:
- normalize/tokenize for set-overlap comparisons
- Jaccard similarity and query coverage
- Stable content hashes for exact-duplicate detection
- A small TF-IDF index used as the lexical ranker
"""

import hashlib
import math
import re
from collections import Counter
from typing import Dict, Iterable, List, Optional, Set

_NON_ALNUM = re.compile(r'[^a-z0-9\s]')
_WHITESPACE = re.compile(r'\s+')

# Stop words dropped by the lexical ranker only; set-overlap tokens keep them
STOP_WORDS = {
    'a', 'an', 'the', 'is', 'are', 'was', 'were', 'be', 'been', 'being',
    'have', 'has', 'had', 'do', 'does', 'did', 'will', 'would', 'could',
    'should', 'may', 'might', 'shall', 'can', 'to', 'of', 'in', 'for', 'on',
    'with', 'at', 'by', 'from', 'as', 'into', 'through', 'then', 'once',
    'here', 'there', 'when', 'where', 'why', 'how', 'all', 'each', 'more',
    'most', 'other', 'some', 'such', 'no', 'nor', 'not', 'only', 'own',
    'same', 'so', 'than', 'too', 'very', 'just', 'and', 'but', 'if', 'or',
    'this', 'that', 'these', 'those', 'it', 'its', 'we', 'they', 'them',
    'what', 'which', 'who', 'whom', 'i', 'you', 'he', 'she', 'me', 'my',
    'our', 'your', 'also', 'any', 'up', 'out', 'over', 'again',
}

# Short technical terms the lexical ranker keeps despite their length
SHORT_TERMS = {'db', 'ui', 'id', 'io', 'os', 'ip', 'vm', 'ai', 'ml', 'ci', 'qa'}


def normalize(text: Optional[str]) -> str:
    """Lowercase, replace anything but [a-z0-9 whitespace] with a space, collapse whitespace."""
    if not text:
        return ""
    lowered = _NON_ALNUM.sub(' ', text.lower())
    return _WHITESPACE.sub(' ', lowered).strip()


def tokenize(text: Optional[str]) -> List[str]:
    """Normalized whitespace tokens longer than two characters."""
    normalized = normalize(text)
    if not normalized:
        return []
    return [token for token in normalized.split(' ') if len(token) > 2]


def token_set(text: Optional[str]) -> Set[str]:
    return set(tokenize(text))


def jaccard(a: Iterable[str], b: Iterable[str]) -> float:
    """|A n B| / |A u B|; 0 when either side is empty."""
    set_a = a if isinstance(a, (set, frozenset)) else set(a)
    set_b = b if isinstance(b, (set, frozenset)) else set(b)
    if not set_a or not set_b:
        return 0.0
    intersection = len(set_a & set_b)
    union = len(set_a) + len(set_b) - intersection
    return intersection / union if union > 0 else 0.0


def coverage(query_tokens: Iterable[str], document_tokens: Iterable[str]) -> float:
    """Fraction of distinct query tokens present in the document."""
    query = set(query_tokens)
    if not query:
        return 0.0
    document = set(document_tokens)
    return len(query & document) / len(query)


def content_hash(text: Optional[str]) -> str:
    """sha256 hex digest of the normalized text."""
    return hashlib.sha256(normalize(text).encode('utf-8')).hexdigest()


def lexical_terms(text: Optional[str]) -> List[str]:
    """Tokens for the lexical ranker: no stop words, short technical terms kept."""
    normalized = normalize(text)
    if not normalized:
        return []
    terms = []
    for word in normalized.split(' '):
        if word in STOP_WORDS:
            continue
        if len(word) < 2:
            continue
        if len(word) == 2 and word not in SHORT_TERMS:
            continue
        terms.append(word)
    return terms


class TFIDFIndex:
    """
    A simple TF-IDF index for document similarity.

    Intentionally lightweight - no external ML deps required.
    """

    def __init__(self):
        self.documents: Dict[str, List[str]] = {}  # doc_id -> terms
        self.document_vectors: Dict[str, Dict[str, float]] = {}  # doc_id -> {term: tfidf}
        self.idf_cache: Dict[str, float] = {}

    @property
    def doc_count(self) -> int:
        return len(self.documents)

    def add_document(self, doc_id: str, text: str, tags: Optional[List[str]] = None) -> None:
        """Add a document to the index. Tags count three times."""
        terms = lexical_terms(text)
        for tag in tags or []:
            terms.extend(lexical_terms(tag) * 3)

        self.documents[doc_id] = terms
        self._invalidate_cache()

    def remove_document(self, doc_id: str) -> None:
        if doc_id in self.documents:
            del self.documents[doc_id]
            self._invalidate_cache()

    def _invalidate_cache(self) -> None:
        self.idf_cache.clear()
        self.document_vectors.clear()

    def _compute_idf(self, term: str) -> float:
        if term in self.idf_cache:
            return self.idf_cache[term]

        doc_freq = sum(1 for terms in self.documents.values() if term in terms)
        if doc_freq == 0:
            idf = 0.0
        else:
            # Standard IDF with smoothing
            idf = math.log((self.doc_count + 1) / (doc_freq + 1)) + 1

        self.idf_cache[term] = idf
        return idf

    def _vectorize(self, terms: List[str]) -> Dict[str, float]:
        if not terms:
            return {}
        tf = Counter(terms)
        max_tf = max(tf.values())
        vector = {}
        for term, count in tf.items():
            tf_normalized = 0.5 + 0.5 * (count / max_tf)  # Augmented TF
            vector[term] = tf_normalized * self._compute_idf(term)
        return vector

    def _get_tfidf_vector(self, doc_id: str) -> Dict[str, float]:
        if doc_id not in self.document_vectors:
            self.document_vectors[doc_id] = self._vectorize(self.documents.get(doc_id, []))
        return self.document_vectors[doc_id]

    @staticmethod
    def cosine_similarity(vec1: Dict[str, float], vec2: Dict[str, float]) -> float:
        if not vec1 or not vec2:
            return 0.0

        common_terms = set(vec1) & set(vec2)
        if not common_terms:
            return 0.0

        dot_product = sum(vec1[t] * vec2[t] for t in common_terms)
        mag1 = math.sqrt(sum(v ** 2 for v in vec1.values()))
        mag2 = math.sqrt(sum(v ** 2 for v in vec2.values()))
        if mag1 == 0 or mag2 == 0:
            return 0.0

        return dot_product / (mag1 * mag2)

    def score_all(self, query: str) -> Dict[str, float]:
        """Cosine similarity of the query against every indexed document."""
        query_vec = self._vectorize(lexical_terms(query))
        if not query_vec:
            return {doc_id: 0.0 for doc_id in self.documents}
        return {
            doc_id: min(1.0, self.cosine_similarity(query_vec, self._get_tfidf_vector(doc_id)))
            for doc_id in self.documents
        }
