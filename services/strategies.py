"""
Recommendation strategies: the arms the contextual bandit chooses between.

Each strategy ranks a list of candidate books for a context. Lists shorter
than the requested limit are padded with the non-personalised popularity
ranking, which is also the fallback when selection fails.
"""

from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional
import logging

from categories import GOAL_KEYWORDS, MOOD_KEYWORDS, STRATEGY_NAMES
from config import RecommenderConfig
from models.context_encoder import ContextEncoder
from models.similarity import SemanticSimilarityEngine
from utils import utcnow

logger = logging.getLogger(__name__)

TAG_FIELDS = ('moods', 'tags', 'themes', 'tone', 'pace', 'best_for', 'categories')


def _book_id(book: Dict[str, Any]) -> str:
    return str(book['id'])


def _popularity(book: Dict[str, Any]) -> float:
    try:
        return float(book.get('popularity_score') or 0.0)
    except (TypeError, ValueError):
        return 0.0


def book_tags(book: Dict[str, Any]) -> set:
    tags = set()
    for name in TAG_FIELDS:
        value = book.get(name)
        if not value:
            continue
        if isinstance(value, str):
            value = [value]
        tags.update(str(item).strip().lower() for item in value if item)
    return tags


def fallback_ranking(candidates: List[Dict[str, Any]], limit: int) -> List[Dict[str, Any]]:
    """Non-personalised ranking: popularity score descending, then book id."""
    ranked = sorted(candidates, key=lambda book: (-_popularity(book), _book_id(book)))
    return [{
        'book_id': _book_id(book),
        'score': _popularity(book),
        'reason': 'Popular with readers',
    } for book in ranked[:limit]]


def pad_with_fallback(ranked: List[Dict[str, Any]], candidates: List[Dict[str, Any]],
                      limit: int) -> List[Dict[str, Any]]:
    """Fill a short ranking with fallback books not already present."""
    if len(ranked) >= limit:
        return ranked[:limit]
    seen = {item['book_id'] for item in ranked}
    padding = [item for item in fallback_ranking(candidates, len(candidates))
               if item['book_id'] not in seen]
    for item in padding[:limit - len(ranked)]:
        item['padded'] = True
        ranked.append(item)
    return ranked


class RecommendationStrategy:
    """Base class for a strategy arm."""
    arm_id = None

    def __init__(self, store=None, config: RecommenderConfig = None):
        self.store = store
        self.config = config or RecommenderConfig()

    @property
    def arm_name(self) -> str:
        return STRATEGY_NAMES.get(self.arm_id, self.arm_id)

    def rank(self, context: Dict[str, Any], candidates: List[Dict[str, Any]],
             user_id: Optional[str] = None, limit: int = 10) -> List[Dict[str, Any]]:
        """Return up to `limit` dicts with book_id, score and reason, best first."""
        raise NotImplementedError

    @staticmethod
    def _top(scores: Dict[str, float], candidates: List[Dict[str, Any]], limit: int,
             reason: str) -> List[Dict[str, Any]]:
        popularity = {_book_id(book): _popularity(book) for book in candidates}
        ranked = sorted(
            (book_id for book_id, score in scores.items() if score > 0),
            key=lambda book_id: (-scores[book_id], -popularity.get(book_id, 0.0), book_id),
        )
        return [{'book_id': book_id, 'score': float(scores[book_id]), 'reason': reason}
                for book_id in ranked[:limit]]


class SemanticSimilarityStrategy(RecommendationStrategy):
    """Books whose text is closest to the words describing the context."""
    arm_id = 'semantic_similarity'

    def __init__(self, similarity_engine: SemanticSimilarityEngine, encoder: ContextEncoder = None,
                 store=None, config: RecommenderConfig = None):
        super().__init__(store, config)
        self.similarity_engine = similarity_engine
        self.encoder = encoder or ContextEncoder()

    def rank(self, context, candidates, user_id=None, limit=10):
        query = self.encoder.context_text(context)
        if not query:
            return []

        candidate_ids = {_book_id(book) for book in candidates}
        engine = self.similarity_engine
        if not candidate_ids & set(engine.index.book_ids):
            # Catalog not synced: score the candidates on their own
            engine = SemanticSimilarityEngine(self.config.similarity)
            engine.build_index(candidates)

        results = engine.query_text(query, k=len(engine.index.book_ids),
                                    threshold_min=self.config.similarity.min_similarity)
        scores = {book_id: similarity for book_id, similarity in results if book_id in candidate_ids}
        return self._top(scores, candidates, limit, 'Matches the feel of your reading context')


class ContextualMoodStrategy(RecommendationStrategy):
    """Books tagged with words that fit the mood, situation and goal."""
    arm_id = 'contextual_mood'

    def rank(self, context, candidates, user_id=None, limit=10):
        mood = str(context.get('mood') or '').strip().lower()
        goal = str(context.get('goal') or '').strip().lower()
        situation = str(context.get('situation') or '').strip().lower()

        keywords = set(MOOD_KEYWORDS.get(mood, [])) | set(GOAL_KEYWORDS.get(goal, []))
        keywords.update(word for word in (mood, goal, situation) if word)
        if not keywords:
            return []

        scores = {}
        for book in candidates:
            overlap = book_tags(book) & keywords
            if overlap:
                scores[_book_id(book)] = len(overlap) / len(keywords)
        return self._top(scores, candidates, limit, f"Fits a {mood or 'reading'} mood")


class TrendingPopularStrategy(RecommendationStrategy):
    """Books with the most engagement over the recent popularity window."""
    arm_id = 'trending_popular'

    def engagement_scores(self) -> Dict[str, float]:
        since = utcnow() - timedelta(days=self.config.popularity_window_days)
        points = self.config.rewards.points_table()
        # A rating counts like a click
        points['rate'] = self.config.rewards.click

        scores: Dict[str, float] = {}
        for row in self.store.action_counts_since(since):
            weight = points.get(row['action_type'], 0.0)
            scores[row['book_id']] = scores.get(row['book_id'], 0.0) + weight * row['count']
        return scores

    def rank(self, context, candidates, user_id=None, limit=10):
        if self.store is None:
            return []
        engagement = self.engagement_scores()
        scores = {_book_id(book): engagement.get(_book_id(book), 0.0) for book in candidates}
        return self._top(scores, candidates, limit, 'Trending with readers this month')


class CollaborativeFilteringStrategy(RecommendationStrategy):
    """Books engaged with by readers who share books with this user."""
    arm_id = 'collaborative_filtering'

    def rank(self, context, candidates, user_id=None, limit=10):
        if self.store is None or not user_id:
            return []
        own_books = set(self.store.user_book_ids(user_id))
        candidate_ids = {_book_id(book) for book in candidates}
        scores = {
            row['book_id']: float(row['overlap'])
            for row in self.store.co_occurring_books(user_id)
            if row['book_id'] in candidate_ids and row['book_id'] not in own_books
        }
        return self._top(scores, candidates, limit, 'Liked by readers with similar taste')


class PersonalizedMixStrategy(RecommendationStrategy):
    """Reciprocal-rank blend of the other strategies."""
    arm_id = 'personalized_mix'

    def __init__(self, strategies: Iterable[RecommendationStrategy], store=None,
                 config: RecommenderConfig = None):
        super().__init__(store, config)
        self.strategies = list(strategies)

    def rank(self, context, candidates, user_id=None, limit=10):
        scores: Dict[str, float] = {}
        for strategy in self.strategies:
            for position, item in enumerate(strategy.rank(context, candidates, user_id, limit)):
                scores[item['book_id']] = scores.get(item['book_id'], 0.0) + 1.0 / (position + 1)
        return self._top(scores, candidates, limit, 'A blend of your reading signals')


def build_strategies(store, similarity_engine: SemanticSimilarityEngine, encoder: ContextEncoder,
                     config: RecommenderConfig) -> Dict[str, RecommendationStrategy]:
    """All strategy arms keyed by arm id."""
    base = [
        SemanticSimilarityStrategy(similarity_engine, encoder, store, config),
        ContextualMoodStrategy(store, config),
        TrendingPopularStrategy(store, config),
        CollaborativeFilteringStrategy(store, config),
    ]
    strategies = {strategy.arm_id: strategy for strategy in base}
    strategies['personalized_mix'] = PersonalizedMixStrategy(base, store, config)
    return strategies
