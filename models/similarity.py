"""
TF-IDF Semantic Similarity Engine

Builds a TF-IDF index over the book corpus and answers nearest-neighbour
queries by cosine similarity. Rebuilds are copy-and-swap: a new index is
built off to the side and published with a single reference assignment, so
readers always see either the old or the complete new index.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple
import logging
import threading

import joblib
import numpy as np
from scipy import sparse
from sklearn.feature_extraction.text import TfidfVectorizer
from sklearn.metrics.pairwise import cosine_similarity

from config import SimilarityConfig
from errors import NotFoundError, ValidationError
from utils import utcnow

logger = logging.getLogger(__name__)

BOOK_TEXT_FIELDS = ('title', 'author', 'description', 'categories', 'themes', 'tone', 'pace', 'best_for')


def book_text(book: Dict[str, Any]) -> str:
    """Render the searchable text of a book record."""
    if book.get('text'):
        return str(book['text'])

    parts = []
    for name in BOOK_TEXT_FIELDS:
        value = book.get(name)
        if not value:
            continue
        if isinstance(value, (list, tuple, set)):
            parts.extend(str(item) for item in value if item)
        else:
            parts.append(str(value))
    return ' '.join(parts)


@dataclass
class SimilarityIndex:
    """Immutable snapshot of the fitted vocabulary and per-book vectors."""
    vectorizer: Optional[TfidfVectorizer] = None
    matrix: Optional[sparse.csr_matrix] = None
    book_ids: List[str] = field(default_factory=list)
    row_norms: np.ndarray = field(default_factory=lambda: np.zeros(0))
    built_at: Optional[datetime] = None

    @property
    def is_empty(self) -> bool:
        return self.vectorizer is None or self.matrix is None

    @property
    def vocabulary_size(self) -> int:
        if self.vectorizer is None:
            return 0
        return len(self.vectorizer.vocabulary_)

    def row_of(self, book_id: str) -> int:
        try:
            return self.book_ids.index(book_id)
        except ValueError:
            raise NotFoundError(f"Book {book_id} is not in the similarity index")


class SemanticSimilarityEngine:
    """TF-IDF similarity over book descriptions."""

    def __init__(self, config: SimilarityConfig = None):
        self.config = config or SimilarityConfig()
        self._index = SimilarityIndex()
        self._lock = threading.Lock()

    @property
    def index(self) -> SimilarityIndex:
        return self._index

    def build_index(self, corpus: Iterable[Dict[str, Any]]) -> SimilarityIndex:
        """
        Fit a new TF-IDF index and publish it.

        Args:
            corpus: Records with an 'id' and either 'text' or book fields

        Returns:
            The published index
        """
        documents = {}
        for record in corpus:
            book_id = record.get('id') if isinstance(record, dict) else None
            if book_id is None:
                raise ValidationError("Every corpus record needs an 'id'", field='id')
            documents[str(book_id)] = book_text(record)

        book_ids = sorted(documents)
        index = SimilarityIndex(book_ids=book_ids, built_at=utcnow())

        if book_ids:
            vectorizer = TfidfVectorizer(
                lowercase=True,
                token_pattern=self.config.token_pattern,
                max_features=self.config.max_features,
                norm='l2',
            )
            try:
                matrix = vectorizer.fit_transform([documents[book_id] for book_id in book_ids])
                index.vectorizer = vectorizer
                index.matrix = sparse.csr_matrix(matrix)
                index.row_norms = np.sqrt(np.asarray(index.matrix.multiply(index.matrix).sum(axis=1)).ravel())
            except ValueError as e:
                # No token survived tokenisation
                logger.warning(f"Similarity index has no vocabulary: {e}")

        with self._lock:
            self._index = index

        logger.info(f"Built similarity index: {len(book_ids)} books, {index.vocabulary_size} terms")
        return index

    def query(self, vector, k: int = 10, threshold_min: float = 0.0) -> List[Tuple[str, float]]:
        """
        Find the books most similar to a vector in the index's term space.

        Returns:
            Up to k (book_id, similarity) pairs with similarity >= threshold_min,
            by descending similarity then ascending book id
        """
        return self._rank(self._index, vector, k, threshold_min)

    def query_text(self, text: str, k: int = 10, threshold_min: float = 0.0) -> List[Tuple[str, float]]:
        """Query the index with free text."""
        index = self._index
        if index.is_empty or not text:
            return []
        return self._rank(index, index.vectorizer.transform([text]), k, threshold_min)

    def vector_for(self, book_id: str) -> sparse.csr_matrix:
        """TF-IDF row of a book."""
        index = self._index
        if index.is_empty:
            raise NotFoundError(f"Book {book_id} is not in the similarity index")
        return index.matrix[index.row_of(book_id)].copy()

    def similar_to_book(self, book_id: str, k: int = 10, threshold_min: float = 0.0) -> List[Tuple[str, float]]:
        """Books most similar to a given book, excluding the book itself."""
        index = self._index
        if index.is_empty:
            raise NotFoundError(f"Book {book_id} is not in the similarity index")
        row = index.matrix[index.row_of(book_id)]
        return self._rank(index, row, k, threshold_min, exclude=book_id)

    def _rank(self, index: SimilarityIndex, vector, k: int, threshold_min: float,
              exclude: Optional[str] = None) -> List[Tuple[str, float]]:
        if index.is_empty or k <= 0:
            return []

        if sparse.issparse(vector):
            query = sparse.csr_matrix(vector)
        else:
            query = np.asarray(vector, dtype=float).reshape(1, -1)

        if query.shape[1] != index.matrix.shape[1]:
            raise ValidationError(
                f"Query has {query.shape[1]} terms, index has {index.matrix.shape[1]}", field='vector'
            )

        if sparse.issparse(query):
            query_norm = np.sqrt(query.multiply(query).sum())
        else:
            query_norm = np.linalg.norm(query)
        if query_norm == 0:
            return []

        similarities = cosine_similarity(query, index.matrix).ravel()

        results = []
        for row, similarity in enumerate(similarities):
            book_id = index.book_ids[row]
            if index.row_norms[row] == 0 or book_id == exclude:
                continue
            if similarity >= threshold_min:
                results.append((book_id, float(similarity)))

        results.sort(key=lambda item: (-item[1], item[0]))
        return results[:k]

    def save(self, filepath: str):
        """Persist the current index with joblib."""
        index = self._index
        joblib.dump({
            'vectorizer': index.vectorizer,
            'matrix': index.matrix,
            'book_ids': index.book_ids,
            'row_norms': index.row_norms,
            'built_at': index.built_at,
        }, filepath)
        logger.info(f"Similarity index saved to {filepath}")

    def load(self, filepath: str) -> SimilarityIndex:
        """Load an index saved with save() and publish it."""
        data = joblib.load(filepath)
        index = SimilarityIndex(
            vectorizer=data['vectorizer'],
            matrix=data['matrix'],
            book_ids=list(data['book_ids']),
            row_norms=data['row_norms'],
            built_at=data['built_at'],
        )
        with self._lock:
            self._index = index
        logger.info(f"Similarity index loaded from {filepath}")
        return index

    def stats(self) -> Dict[str, Any]:
        index = self._index
        return {
            'books': len(index.book_ids),
            'vocabulary_size': index.vocabulary_size,
            'built_at': index.built_at.isoformat() if index.built_at else None,
        }
