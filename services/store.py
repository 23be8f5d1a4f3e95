"""
Reward Store

SQLAlchemy-backed persistence for impressions, actions, the attribution
ledger, arm parameters and the book corpus. PostgreSQL in production,
SQLite for development and tests.
"""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence
import logging
import threading

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    and_,
    case,
    create_engine,
    func,
    or_,
    select,
    text,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.pool import StaticPool

from config import DatabaseConfig
from errors import AttributionConflict, NotFoundError
from models.records import Action, Attribution, Identity, Impression
from utils import to_naive_utc, utcnow

logger = logging.getLogger(__name__)

metadata = MetaData()

impressions_table = Table(
    'recommendation_impressions', metadata,
    Column('id', String(64), primary_key=True),
    Column('user_id', String(128), index=True),
    Column('session_id', String(128), index=True),
    Column('book_id', String(128), nullable=False, index=True),
    Column('arm_id', String(64), nullable=False),
    Column('scope', String(128), nullable=False),
    Column('rank', Integer, nullable=False),
    Column('score', Float, nullable=False, default=0.0),
    Column('context_vector', JSON, nullable=False),
    Column('context', JSON),
    Column('details', JSON),
    Column('created_at', DateTime, nullable=False, index=True),
    Column('reward', Float),
    Column('attributed_at', DateTime),
)

actions_table = Table(
    'recommendation_actions', metadata,
    Column('id', String(64), primary_key=True),
    Column('user_id', String(128), index=True),
    Column('session_id', String(128), index=True),
    Column('book_id', String(128), nullable=False, index=True),
    Column('action_type', String(32), nullable=False),
    Column('action_value', Float),
    Column('created_at', DateTime, nullable=False, index=True),
    Column('attributed_impression_id', String(64)),
    Column('attributed_at', DateTime),
)

attributions_table = Table(
    'reward_attributions', metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('action_id', String(64), nullable=False, unique=True),
    Column('impression_id', String(64), nullable=False, index=True),
    Column('points', Float, nullable=False),
    Column('decay_weight', Float, nullable=False),
    Column('reward', Float, nullable=False),
    Column('attributed_at', DateTime, nullable=False),
    Column('model_applied', Boolean, nullable=False, default=False),
    Column('model_error', Text),
)

arm_parameters_table = Table(
    'arm_parameters', metadata,
    Column('scope', String(128), primary_key=True),
    Column('arm_id', String(64), primary_key=True),
    Column('state', JSON, nullable=False),
    Column('interaction_count', Integer, nullable=False, default=0),
    Column('cumulative_reward', Float, nullable=False, default=0.0),
    Column('updated_at', DateTime, nullable=False),
)

books_table = Table(
    'book_corpus', metadata,
    Column('id', String(128), primary_key=True),
    Column('title', String(512)),
    Column('author', String(512)),
    Column('text', Text),
    Column('popularity_score', Float, nullable=False, default=0.0),
    Column('data', JSON),
    Column('updated_at', DateTime, nullable=False, index=True),
)


def _identity_from_row(row) -> Identity:
    return Identity(user_id=row['user_id'], session_id=row['session_id'])


def impression_from_row(row) -> Impression:
    return Impression(
        impression_id=row['id'],
        identity=_identity_from_row(row),
        book_id=row['book_id'],
        arm_id=row['arm_id'],
        context_vector=list(row['context_vector'] or []),
        rank=row['rank'],
        score=row['score'],
        created_at=row['created_at'],
        context=row['context'] or {},
        metadata=row['details'] or {},
        reward=row['reward'],
        attributed_at=row['attributed_at'],
    )


def action_from_row(row) -> Action:
    return Action(
        action_id=row['id'],
        identity=_identity_from_row(row),
        book_id=row['book_id'],
        action_type=row['action_type'],
        created_at=row['created_at'],
        action_value=row['action_value'],
        attributed_impression_id=row['attributed_impression_id'],
        attributed_at=row['attributed_at'],
    )


class RewardStore:
    """Relational store adapter used by the recorder, attribution engine and strategies."""

    def __init__(self, config: DatabaseConfig = None, engine=None):
        self.config = config or DatabaseConfig()
        self.engine = engine or self._create_engine()
        # SQLite allows one writer at a time
        self._write_lock = threading.RLock()
        logger.info(f"Reward store connected ({self.engine.dialect.name})")

    def _create_engine(self):
        kwargs = self.config.get_engine_kwargs()
        if self.config.is_sqlite:
            kwargs['connect_args'] = {'check_same_thread': False}
            if self.config.url in ('sqlite://', 'sqlite:///:memory:'):
                kwargs['poolclass'] = StaticPool
        return create_engine(self.config.url, **kwargs)

    def create_schema(self):
        """Create all tables that do not exist yet."""
        metadata.create_all(self.engine)
        logger.info("Recommendation tables created")

    def drop_schema(self):
        metadata.drop_all(self.engine)

    def close(self):
        self.engine.dispose()

    # Impressions and actions

    def insert_impressions(self, impressions: Sequence[Impression]) -> List[str]:
        """Insert a ranked list of impressions in one transaction."""
        if not impressions:
            return []
        rows = [{
            'id': imp.impression_id,
            'user_id': imp.identity.user_id,
            'session_id': imp.identity.session_id,
            'book_id': imp.book_id,
            'arm_id': imp.arm_id,
            'scope': imp.identity.scope,
            'rank': imp.rank,
            'score': imp.score,
            'context_vector': [float(v) for v in imp.context_vector],
            'context': imp.context,
            'details': imp.metadata,
            'created_at': to_naive_utc(imp.created_at),
            'reward': imp.reward,
            'attributed_at': to_naive_utc(imp.attributed_at),
        } for imp in impressions]

        with self._write_lock, self.engine.begin() as conn:
            conn.execute(impressions_table.insert(), rows)
        return [row['id'] for row in rows]

    def insert_action(self, action: Action) -> str:
        with self._write_lock, self.engine.begin() as conn:
            conn.execute(actions_table.insert().values(
                id=action.action_id,
                user_id=action.identity.user_id,
                session_id=action.identity.session_id,
                book_id=action.book_id,
                action_type=action.action_type,
                action_value=action.action_value,
                created_at=to_naive_utc(action.created_at),
            ))
        return action.action_id

    def get_impression(self, impression_id: str) -> Impression:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(impressions_table).where(impressions_table.c.id == impression_id)
            ).mappings().first()
        if row is None:
            raise NotFoundError(f"Impression {impression_id} not found")
        return impression_from_row(row)

    def get_action(self, action_id: str) -> Action:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(actions_table).where(actions_table.c.id == action_id)
            ).mappings().first()
        if row is None:
            raise NotFoundError(f"Action {action_id} not found")
        return action_from_row(row)

    def unattributed_actions(self, since: datetime, limit: int = None) -> List[Dict[str, Any]]:
        """Raw rows of unattributed actions created at or after `since`, oldest first."""
        query = (
            select(actions_table)
            .where(and_(actions_table.c.attributed_at.is_(None),
                        actions_table.c.created_at >= to_naive_utc(since)))
            .order_by(actions_table.c.created_at.asc(), actions_table.c.id.asc())
        )
        if limit is not None:
            query = query.limit(limit)
        with self.engine.connect() as conn:
            return [dict(row) for row in conn.execute(query).mappings()]

    def find_candidate_impressions(self, user_id: Optional[str], session_id: Optional[str],
                                   book_id: str, earliest: datetime, latest: datetime) -> List[Impression]:
        """
        Impressions of a book for the same identity with earliest <= created_at <= latest,
        most recent first, then by rank.
        """
        identity_clauses = []
        if user_id:
            identity_clauses.append(impressions_table.c.user_id == user_id)
        if session_id:
            identity_clauses.append(impressions_table.c.session_id == session_id)
        if not identity_clauses:
            return []

        query = (
            select(impressions_table)
            .where(and_(
                or_(*identity_clauses),
                impressions_table.c.book_id == book_id,
                impressions_table.c.created_at >= to_naive_utc(earliest),
                impressions_table.c.created_at <= to_naive_utc(latest),
            ))
            .order_by(impressions_table.c.created_at.desc(), impressions_table.c.rank.asc(),
                      impressions_table.c.id.asc())
        )
        with self.engine.connect() as conn:
            return [impression_from_row(row) for row in conn.execute(query).mappings()]

    def attribute_action(self, attribution: Attribution, floor_reward: bool = True):
        """
        Credit an impression for an action in one transaction.

        The action's attribution marker is set only if it is still unset; the
        impression reward is incremented and the ledger row inserted.

        Raises:
            AttributionConflict: If the action was already attributed
        """
        current = func.coalesce(impressions_table.c.reward, 0.0)
        new_reward = current + attribution.reward
        if floor_reward:
            new_reward = case((new_reward < 0, 0.0), else_=new_reward)

        attributed_at = to_naive_utc(attribution.attributed_at)

        try:
            with self._write_lock, self.engine.begin() as conn:
                result = conn.execute(
                    actions_table.update()
                    .where(and_(actions_table.c.id == attribution.action_id,
                                actions_table.c.attributed_at.is_(None)))
                    .values(attributed_impression_id=attribution.impression_id,
                            attributed_at=attributed_at)
                )
                if result.rowcount == 0:
                    raise AttributionConflict(attribution.action_id)

                result = conn.execute(
                    impressions_table.update()
                    .where(impressions_table.c.id == attribution.impression_id)
                    .values(reward=new_reward, attributed_at=attributed_at)
                )
                if result.rowcount == 0:
                    raise NotFoundError(f"Impression {attribution.impression_id} not found")

                conn.execute(attributions_table.insert().values(
                    action_id=attribution.action_id,
                    impression_id=attribution.impression_id,
                    points=attribution.points,
                    decay_weight=attribution.decay_weight,
                    reward=attribution.reward,
                    attributed_at=attributed_at,
                    model_applied=False,
                ))
        except IntegrityError:
            raise AttributionConflict(attribution.action_id)

    def list_attributions(self, impression_id: str = None) -> List[Attribution]:
        query = select(attributions_table).order_by(attributions_table.c.id.asc())
        if impression_id is not None:
            query = query.where(attributions_table.c.impression_id == impression_id)
        with self.engine.connect() as conn:
            return [Attribution(
                action_id=row['action_id'],
                impression_id=row['impression_id'],
                points=row['points'],
                decay_weight=row['decay_weight'],
                reward=row['reward'],
                attributed_at=row['attributed_at'],
                model_applied=row['model_applied'],
                model_error=row['model_error'],
            ) for row in conn.execute(query).mappings()]

    # Model updates

    def pending_model_updates(self) -> List[Dict[str, Any]]:
        """Ledger rows not yet applied to the arm models, joined with their impressions."""
        query = (
            select(
                attributions_table.c.id.label('attribution_id'),
                attributions_table.c.action_id,
                attributions_table.c.impression_id,
                attributions_table.c.reward,
                impressions_table.c.arm_id,
                impressions_table.c.user_id,
                impressions_table.c.context_vector,
            )
            .select_from(attributions_table.join(
                impressions_table, attributions_table.c.impression_id == impressions_table.c.id))
            .where(and_(attributions_table.c.model_applied.is_(False),
                        attributions_table.c.model_error.is_(None)))
            .order_by(attributions_table.c.id.asc())
        )
        with self.engine.connect() as conn:
            return [dict(row) for row in conn.execute(query).mappings()]

    def _upsert_arm(self, conn, arm):
        now = utcnow()
        values = {
            'state': arm.to_dict(),
            'interaction_count': arm.interaction_count,
            'cumulative_reward': arm.cumulative_reward,
            'updated_at': now,
        }
        result = conn.execute(
            arm_parameters_table.update()
            .where(and_(arm_parameters_table.c.scope == arm.scope,
                        arm_parameters_table.c.arm_id == arm.arm_id))
            .values(**values)
        )
        if result.rowcount == 0:
            conn.execute(arm_parameters_table.insert().values(scope=arm.scope, arm_id=arm.arm_id, **values))

    def save_arm(self, arm, applied_attribution_ids: Iterable[int] = ()):
        """
        Write arm parameters and mark ledger rows applied in one transaction.

        Raises:
            AttributionConflict: If any of the rows was already applied, in
                which case nothing is written
        """
        applied_attribution_ids = list(applied_attribution_ids)
        with self._write_lock, self.engine.begin() as conn:
            if applied_attribution_ids:
                result = conn.execute(
                    attributions_table.update()
                    .where(and_(attributions_table.c.id.in_(applied_attribution_ids),
                                attributions_table.c.model_applied.is_(False)))
                    .values(model_applied=True)
                )
                if result.rowcount != len(set(applied_attribution_ids)):
                    raise AttributionConflict(
                        None, f"Ledger rows {sorted(set(applied_attribution_ids))} were already applied"
                    )
            self._upsert_arm(conn, arm)

    def mark_model_error(self, attribution_ids: Iterable[int], message: str):
        with self._write_lock, self.engine.begin() as conn:
            conn.execute(
                attributions_table.update()
                .where(attributions_table.c.id.in_(list(attribution_ids)))
                .values(model_error=message[:1000])
            )

    def load_arm_states(self, scope: str = None) -> List[Dict[str, Any]]:
        """Stored arm states, all scopes or only one."""
        query = (
            select(arm_parameters_table.c.state)
            .order_by(arm_parameters_table.c.scope, arm_parameters_table.c.arm_id)
        )
        if scope is not None:
            query = query.where(arm_parameters_table.c.scope == scope)
        with self.engine.connect() as conn:
            rows = conn.execute(query).all()
        return [row[0] for row in rows]

    def delete_arm_states(self, arm_id: str = None, scope: str = None) -> int:
        query = arm_parameters_table.delete()
        if arm_id is not None:
            query = query.where(arm_parameters_table.c.arm_id == arm_id)
        if scope is not None:
            query = query.where(arm_parameters_table.c.scope == scope)
        with self._write_lock, self.engine.begin() as conn:
            return conn.execute(query).rowcount

    # Identity

    def merge_identities(self, session_id: str, user_id: str) -> Dict[str, int]:
        """Assign a session's anonymous impressions and actions to a user."""
        with self._write_lock, self.engine.begin() as conn:
            impressions = conn.execute(
                impressions_table.update()
                .where(and_(impressions_table.c.session_id == session_id,
                            impressions_table.c.user_id.is_(None)))
                .values(user_id=user_id)
            ).rowcount
            actions = conn.execute(
                actions_table.update()
                .where(and_(actions_table.c.session_id == session_id,
                            actions_table.c.user_id.is_(None)))
                .values(user_id=user_id)
            ).rowcount
        return {'impressions': impressions, 'actions': actions}

    # Strategy queries

    def action_counts_since(self, since: datetime) -> List[Dict[str, Any]]:
        """Per-book action counts by type since a point in time."""
        with self.engine.connect() as conn:
            query = text("""
                SELECT book_id, action_type, COUNT(*) AS action_count
                FROM recommendation_actions
                WHERE created_at >= :since
                GROUP BY book_id, action_type
            """)
            result = conn.execute(query, {'since': to_naive_utc(since)})
            return [{'book_id': row[0], 'action_type': row[1], 'count': row[2]} for row in result]

    def user_book_ids(self, user_id: str) -> List[str]:
        with self.engine.connect() as conn:
            query = text("""
                SELECT DISTINCT book_id
                FROM recommendation_actions
                WHERE user_id = :user_id AND action_type IN ('click', 'save', 'rate')
            """)
            return [row[0] for row in conn.execute(query, {'user_id': user_id})]

    def co_occurring_books(self, user_id: str, limit: int = 100) -> List[Dict[str, Any]]:
        """Books engaged with by users who share books with this user, by peer overlap."""
        with self.engine.connect() as conn:
            query = text("""
                SELECT other.book_id, COUNT(DISTINCT other.user_id) AS overlap
                FROM recommendation_actions mine
                JOIN recommendation_actions peer
                    ON peer.book_id = mine.book_id AND peer.user_id <> mine.user_id
                JOIN recommendation_actions other
                    ON other.user_id = peer.user_id
                WHERE mine.user_id = :user_id
                  AND mine.action_type IN ('click', 'save', 'rate')
                  AND peer.action_type IN ('click', 'save', 'rate')
                  AND other.action_type IN ('click', 'save', 'rate')
                GROUP BY other.book_id
                ORDER BY overlap DESC, other.book_id ASC
                LIMIT :limit
            """)
            result = conn.execute(query, {'user_id': user_id, 'limit': limit})
            return [{'book_id': row[0], 'overlap': row[1]} for row in result]

    # Book corpus

    def upsert_books(self, books: Iterable[Dict[str, Any]]) -> int:
        count = 0
        now = utcnow()
        with self._write_lock, self.engine.begin() as conn:
            for book in books:
                values = {
                    'title': book.get('title'),
                    'author': book.get('author'),
                    'text': book.get('text'),
                    'popularity_score': float(book.get('popularity_score') or 0.0),
                    'data': book,
                    'updated_at': now,
                }
                result = conn.execute(
                    books_table.update().where(books_table.c.id == str(book['id'])).values(**values)
                )
                if result.rowcount == 0:
                    conn.execute(books_table.insert().values(id=str(book['id']), **values))
                count += 1
        logger.info(f"Upserted {count} books")
        return count

    def all_books(self) -> List[Dict[str, Any]]:
        with self.engine.connect() as conn:
            rows = conn.execute(select(books_table.c.data).order_by(books_table.c.id)).all()
        return [row[0] for row in rows]

    def books_changed_since(self, since: datetime) -> List[Dict[str, Any]]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(books_table.c.data)
                .where(books_table.c.updated_at >= to_naive_utc(since))
                .order_by(books_table.c.updated_at, books_table.c.id)
            ).all()
        return [row[0] for row in rows]

    def get_book(self, book_id: str) -> Dict[str, Any]:
        with self.engine.connect() as conn:
            row = conn.execute(select(books_table.c.data).where(books_table.c.id == book_id)).first()
        if row is None:
            raise NotFoundError(f"Book {book_id} not found")
        return row[0]
