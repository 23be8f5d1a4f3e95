"""
Recommendation Engine Service

Caller-facing facade of the contextual bandit core:
1. select_recommendation: encode the context, let LinUCB pick a strategy arm,
   rank the candidate books with it and record the impressions
2. record_interaction: store a click / save / unsave / rating
3. run_attribution_batch: credit impressions with decayed rewards and update arms
4. get_arm_statistics: per-arm performance with confidence intervals

Selection and recording never fail the caller for anything but invalid input:
other errors fall back to the non-personalised popularity ranking.
"""

from typing import Any, Dict, List, Optional
import json
import logging
import os
import threading
import time

import redis

from config import RecommenderConfig
from errors import ValidationError
from models.context_encoder import ContextEncoder
from models.contextual_bandit import ContextualBandit
from models.similarity import SemanticSimilarityEngine
from services.attribution import AttributionEngine
from services.reward_signals import RewardSignalRecorder, make_identity
from services.statistics import StatsAggregator
from services.store import RewardStore
from services.strategies import build_strategies, fallback_ranking, pad_with_fallback

logger = logging.getLogger(__name__)

STATS_CACHE_PREFIX = 'arm_statistics:'


class SelectionCancelled(Exception):
    """Raised internally when a selection is cancelled or runs out of time."""


class RecommendationEngine:
    """
    Contextual bandit recommendation engine over a set of strategy arms.
    """

    def __init__(self, config: RecommenderConfig = None, store: RewardStore = None,
                 similarity_engine: SemanticSimilarityEngine = None, redis_client=None):
        self.config = config or RecommenderConfig()

        self.store = store or RewardStore(self.config.database)
        self.store.create_schema()

        self.encoder = ContextEncoder()
        # Arm states are loaded per scope on first use
        self.bandit = ContextualBandit(self.config.bandit, loader=self.store.load_arm_states)
        self.similarity_engine = similarity_engine or SemanticSimilarityEngine(self.config.similarity)
        self.recorder = RewardSignalRecorder(self.store, self.config)
        self.attribution = AttributionEngine(self.store, self.bandit, self.recorder, self.config)
        self.statistics = StatsAggregator(self.config.statistics, self.config.bandit)
        self.strategies = build_strategies(self.store, self.similarity_engine, self.encoder, self.config)

        missing = set(self.config.bandit.arm_ids) - set(self.strategies)
        if missing:
            raise ValueError(f"No strategy implements arms: {sorted(missing)}")

        self.redis_client = redis_client
        self._metrics_lock = threading.Lock()
        self.metrics = {
            'total_selections': 0,
            'fallback_selections': 0,
            'avg_response_time': 0.0,
            'interactions_recorded': 0,
            'interactions_rejected': 0,
            'attribution_batches': 0,
        }

        self._initialise_cache()
        self._load_similarity_index()

        logger.info("Recommendation Engine initialised successfully")

    def _initialise_cache(self):
        """Connect to Redis when a host is configured."""
        if self.redis_client is not None or not self.config.redis_host:
            return
        try:
            self.redis_client = redis.Redis(
                host=self.config.redis_host,
                port=self.config.redis_port,
                password=self.config.redis_password,
                decode_responses=True,
            )
            logger.info("Redis cache connection established")
        except Exception as e:
            logger.error(f"Failed to initialise Redis connection: {e}")
            self.redis_client = None

    def _load_similarity_index(self):
        index_path = self.config.similarity.index_path
        try:
            if index_path and os.path.exists(index_path):
                self.similarity_engine.load(index_path)
                return
            books = self.store.all_books()
            if books:
                self.similarity_engine.build_index(books)
        except Exception as e:
            logger.error(f"Failed to load similarity index: {e}")

    # Selection

    def _check_limit(self, limit: Optional[int]) -> int:
        if limit is None:
            return self.config.default_limit
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
            raise ValidationError("limit must be a positive integer", field='limit')
        if limit > self.config.max_recommendations:
            raise ValidationError(f"limit cannot exceed {self.config.max_recommendations}", field='limit')
        return limit

    @staticmethod
    def _check_candidates(candidate_books) -> List[Dict[str, Any]]:
        if not isinstance(candidate_books, (list, tuple)):
            raise ValidationError("candidate_books must be a list", field='candidate_books')

        candidates = []
        seen = set()
        for book in candidate_books:
            if isinstance(book, str):
                book = {'id': book}
            if not isinstance(book, dict) or not book.get('id'):
                raise ValidationError("Every candidate book needs an 'id'", field='candidate_books')
            book = dict(book, id=str(book['id']))
            if book['id'] not in seen:
                seen.add(book['id'])
                candidates.append(book)
        return candidates

    def _check_not_cancelled(self, started: float, cancel_event: threading.Event = None):
        if cancel_event is not None and cancel_event.is_set():
            raise SelectionCancelled("selection cancelled")
        timeout_ms = self.config.selection_timeout_ms
        if timeout_ms is not None and (time.perf_counter() - started) * 1000.0 > timeout_ms:
            raise SelectionCancelled(f"selection exceeded {timeout_ms} ms")

    def select_recommendation(self, context: Dict[str, Any], candidate_books: List[Any],
                              user_id: str = None, session_id: str = None, limit: int = None,
                              cancel_event: threading.Event = None) -> Dict[str, Any]:
        """
        Choose a strategy arm for the context and return its ranked book list.

        Args:
            context: Reading context (mood, situation, goal, time_of_day, ...)
            candidate_books: Book dicts with at least an 'id', or plain ids
            user_id: Signed-in user, if any
            session_id: Anonymous session, if any
            limit: Number of books to return
            cancel_event: When set, the call returns the fallback ranking

        Returns:
            Dictionary with book_list, arm_used, diagnostics and impression_ids

        Raises:
            ValidationError: If the context, identity or arguments are invalid
        """
        started = time.perf_counter()
        limit = self._check_limit(limit)
        identity = make_identity(user_id, session_id)
        candidates = self._check_candidates(candidate_books)
        x = self.encoder.encode(context, user_id=user_id)

        if not candidates:
            return {
                'book_list': [],
                'arm_used': None,
                'diagnostics': {'fallback': False, 'reason': 'no candidates'},
                'impression_ids': [],
            }

        try:
            self._check_not_cancelled(started, cancel_event)
            selection = self.bandit.select_arm(x, arm_ids=self.config.bandit.arm_ids, user_id=user_id)
            strategy = self.strategies[selection.arm_id]

            ranked = strategy.rank(context, candidates, user_id=user_id, limit=limit)
            ranked = pad_with_fallback(ranked, candidates, limit)
            self._check_not_cancelled(started, cancel_event)

            book_list = self._format_books(ranked, candidates)
            impression_ids = self.recorder.record_impressions(
                identity,
                [{'book_id': book['book_id'], 'rank': book['rank'], 'score': book['score'],
                  'metadata': {'reason': book['reason'], 'padded': book['padded']}}
                 for book in book_list],
                x, selection.arm_id, context=dict(context),
            )
        except ValidationError:
            raise
        except Exception as e:
            reason = str(e) or type(e).__name__
            log = logger.warning if isinstance(e, SelectionCancelled) else logger.error
            log(f"Falling back to popular books for {identity.user_id or identity.session_id}: {reason}")
            return self._fallback_response(candidates, limit, reason, started)

        elapsed = time.perf_counter() - started
        self._record_selection_metrics(elapsed, fallback=False)

        logger.info(f"Selected strategy {selection.arm_name} (UCB: {selection.ucb_score:.3f}) "
                    f"for {identity.user_id or identity.session_id}")

        return {
            'book_list': book_list,
            'arm_used': selection.arm_id,
            'diagnostics': {
                'fallback': False,
                'arm_name': selection.arm_name,
                'scope': selection.scope,
                'predicted_reward': selection.predicted_reward,
                'confidence_bonus': selection.confidence_bonus,
                'ucb_score': selection.ucb_score,
                'exploration_level': selection.exploration_level,
                'scores': {arm_id: score.to_dict() for arm_id, score in selection.scores.items()},
                'excluded_arms': selection.excluded,
                'context_signature': self.encoder.signature(context),
                'elapsed_ms': elapsed * 1000.0,
            },
            'impression_ids': impression_ids,
        }

    @staticmethod
    def _format_books(ranked: List[Dict[str, Any]], candidates: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        by_id = {book['id']: book for book in candidates}
        book_list = []
        for position, item in enumerate(ranked, start=1):
            book = by_id.get(item['book_id'], {})
            book_list.append({
                'book_id': item['book_id'],
                'title': book.get('title'),
                'rank': position,
                'score': float(item.get('score') or 0.0),
                'reason': item.get('reason'),
                'padded': bool(item.get('padded', False)),
            })
        return book_list

    def _fallback_response(self, candidates: List[Dict[str, Any]], limit: int, reason: str,
                           started: float) -> Dict[str, Any]:
        ranked = fallback_ranking(candidates, limit)
        book_list = self._format_books(ranked, candidates)
        elapsed = time.perf_counter() - started
        self._record_selection_metrics(elapsed, fallback=True)
        return {
            'book_list': book_list,
            'arm_used': None,
            'diagnostics': {'fallback': True, 'reason': reason, 'elapsed_ms': elapsed * 1000.0},
            'impression_ids': [],
        }

    def _record_selection_metrics(self, response_time: float, fallback: bool):
        with self._metrics_lock:
            self.metrics['total_selections'] += 1
            if fallback:
                self.metrics['fallback_selections'] += 1
            total = self.metrics['total_selections']
            current_avg = self.metrics['avg_response_time']
            self.metrics['avg_response_time'] = (current_avg * (total - 1) + response_time) / total

    # Interactions

    def record_interaction(self, book_id: str, action_type: str, action_value: float = None,
                           user_id: str = None, session_id: str = None, timestamp=None) -> Dict[str, Any]:
        """
        Record a user action.

        Raises:
            ValidationError: For unknown action types, bad ratings or missing identity
        """
        identity = make_identity(user_id, session_id)
        try:
            ack = self.recorder.record_action(identity, book_id, action_type, action_value, timestamp)
        except ValidationError:
            with self._metrics_lock:
                self.metrics['interactions_rejected'] += 1
            raise
        except Exception as e:
            logger.error(f"Error recording interaction: {e}")
            return {'accepted': False, 'action_id': None, 'error': str(e)}

        with self._metrics_lock:
            self.metrics['interactions_recorded'] += 1
        return ack

    # Attribution

    def run_attribution_batch(self, window_hours: float = None, max_actions: int = None,
                              should_stop=None) -> Dict[str, Any]:
        """Attribute pending actions and apply the resulting rewards to the arms."""
        summary = self.attribution.attribute_rewards(window_hours, max_actions=max_actions,
                                                     should_stop=should_stop)
        with self._metrics_lock:
            self.metrics['attribution_batches'] += 1
        self._invalidate_stats_cache()
        return summary

    def merge_identities(self, session_id: str, user_id: str) -> Dict[str, int]:
        result = self.attribution.merge_identities(session_id, user_id)
        self._invalidate_stats_cache()
        return result

    # Statistics

    def get_arm_statistics(self, user_id: str = None) -> Dict[str, Any]:
        """Per-arm statistics for a user's scope (the anonymous scope by default)."""
        registry = self.bandit.registry
        scope = registry.scope_for(user_id)
        cache_key = f"{STATS_CACHE_PREFIX}{scope}"

        cached = self._get_from_cache(cache_key)
        if cached:
            return cached

        if scope in registry.scopes():
            arms = registry.snapshots(scope)
        else:
            arms = registry.stored_snapshots(scope)

        summary = self.statistics.summarise(
            arms,
            alpha=self.config.bandit.alpha,
            mean_exploration=self.bandit.selector.mean_exploration_level(),
            scope=scope,
        )
        self._set_cache(cache_key, summary)
        return summary

    def get_metrics(self) -> Dict[str, Any]:
        with self._metrics_lock:
            return self.metrics.copy()

    # Administration

    def sync_catalog(self, books: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Upsert book records and rebuild the similarity index."""
        if not isinstance(books, (list, tuple)):
            raise ValidationError("books must be a list", field='books')
        for book in books:
            if not isinstance(book, dict) or not book.get('id'):
                raise ValidationError("Every book needs an 'id'", field='books')

        upserted = self.store.upsert_books(books)
        index = self.similarity_engine.build_index(self.store.all_books())

        if self.config.similarity.index_path:
            try:
                self.similarity_engine.save(self.config.similarity.index_path)
            except OSError as e:
                logger.error(f"Failed to save similarity index: {e}")

        return {'upserted': upserted, 'indexed': len(index.book_ids),
                'vocabulary_size': index.vocabulary_size}

    def reset_arms(self, arm_id: str = None, user_id: str = None) -> int:
        """Administrative reset of arm parameters, in memory and in the store."""
        scope = self.bandit.registry.scope_for(user_id) if user_id else None
        count = self.bandit.registry.reset(arm_id=arm_id, scope=scope)
        self.store.delete_arm_states(arm_id=arm_id, scope=scope)
        self._invalidate_stats_cache()
        return count

    def close(self):
        if self.redis_client is not None:
            try:
                self.redis_client.close()
            except Exception as e:
                logger.error(f"Error closing Redis connection: {e}")
        self.store.close()

    # Cache

    def _get_from_cache(self, key: str) -> Optional[Dict[str, Any]]:
        try:
            if self.redis_client:
                cached = self.redis_client.get(key)
                if cached:
                    return json.loads(cached)
        except Exception as e:
            logger.error(f"Cache get error: {e}")
        return None

    def _set_cache(self, key: str, value: Dict[str, Any]):
        try:
            if self.redis_client:
                self.redis_client.setex(key, self.config.cache_ttl, json.dumps(value))
        except Exception as e:
            logger.error(f"Cache set error: {e}")

    def _invalidate_stats_cache(self):
        try:
            if self.redis_client:
                keys = list(self.redis_client.scan_iter(match=f"{STATS_CACHE_PREFIX}*"))
                if keys:
                    self.redis_client.delete(*keys)
        except Exception as e:
            logger.error(f"Cache invalidation error: {e}")
