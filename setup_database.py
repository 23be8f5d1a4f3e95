"""
Database Setup Script for the Contextual Book Recommender

Creates the database (PostgreSQL) and the tables for:
- Recommendation impressions and user actions
- The reward attribution ledger
- Arm parameters
- The book corpus used by the similarity index
"""

import logging

import psycopg2
from psycopg2.extensions import ISOLATION_LEVEL_AUTOCOMMIT
from psycopg2 import sql
from sqlalchemy import text
from sqlalchemy.engine import make_url

from config import DatabaseConfig
from config.settings import get_settings
from services.store import RewardStore

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


SAMPLE_BOOKS = [
    {
        'id': 'book_001', 'title': 'The Hobbit', 'author': 'J.R.R. Tolkien',
        'description': 'A reluctant hobbit joins a company of dwarves on an epic quest to reclaim their mountain home.',
        'moods': ['adventurous', 'cozy', 'nostalgic'], 'themes': ['fantasy', 'friendship', 'courage'],
        'best_for': ['escape', 'before_bed'], 'popularity_score': 0.92,
    },
    {
        'id': 'book_002', 'title': 'Atomic Habits', 'author': 'James Clear',
        'description': 'Practical strategies for building good habits, breaking bad ones and getting one percent better every day.',
        'moods': ['motivated', 'practical', 'uplifting'], 'themes': ['habits', 'self-help', 'productivity'],
        'best_for': ['commuting', 'self_improvement'], 'popularity_score': 0.95,
    },
    {
        'id': 'book_003', 'title': 'Sapiens', 'author': 'Yuval Noah Harari',
        'description': 'A brief history of humankind, from foraging bands to the scientific and industrial revolutions.',
        'moods': ['curious', 'thought-provoking', 'informative'], 'themes': ['history', 'science', 'culture'],
        'best_for': ['learning', 'perspective'], 'popularity_score': 0.91,
    },
    {
        'id': 'book_004', 'title': 'The House in the Cerulean Sea', 'author': 'TJ Klune',
        'description': 'A gentle caseworker is sent to an island orphanage of magical children and finds a family.',
        'moods': ['cozy', 'hopeful', 'gentle', 'light-hearted'], 'themes': ['found family', 'fantasy'],
        'best_for': ['relaxation', 'before_bed'], 'popularity_score': 0.86,
    },
    {
        'id': 'book_005', 'title': 'Project Hail Mary', 'author': 'Andy Weir',
        'description': 'A lone astronaut wakes with no memory and must solve an interstellar mystery to save the earth.',
        'moods': ['thrilling', 'funny', 'fast-paced'], 'themes': ['science', 'space', 'survival'],
        'best_for': ['entertainment', 'traveling'], 'popularity_score': 0.93,
    },
    {
        'id': 'book_006', 'title': 'Meditations', 'author': 'Marcus Aurelius',
        'description': 'Private reflections of a Roman emperor on duty, impermanence and a calm, examined life.',
        'moods': ['reflective', 'philosophical', 'calm'], 'themes': ['stoicism', 'philosophy'],
        'best_for': ['mindfulness', 'morning'], 'popularity_score': 0.8,
    },
    {
        'id': 'book_007', 'title': 'Deep Work', 'author': 'Cal Newport',
        'description': 'Rules for focused success in a distracted world and the business value of concentration.',
        'moods': ['focused', 'practical', 'rigorous'], 'themes': ['productivity', 'business', 'career'],
        'best_for': ['professional', 'work_day'], 'popularity_score': 0.84,
    },
    {
        'id': 'book_008', 'title': 'The Night Circus', 'author': 'Erin Morgenstern',
        'description': 'Two young magicians compete within a mysterious black and white circus that opens only at night.',
        'moods': ['mysterious', 'imaginative', 'romantic'], 'themes': ['magic', 'fantasy', 'art'],
        'best_for': ['escape', 'evening'], 'popularity_score': 0.83,
    },
]


def create_database(db_url: str):
    """Create the PostgreSQL database named in the URL if it doesn't exist."""
    url = make_url(db_url)
    if not url.get_backend_name().startswith('postgres'):
        logger.info(f"Skipping database creation for {url.get_backend_name()}")
        return

    try:
        # Connect to the server's maintenance database
        conn = psycopg2.connect(
            host=url.host or 'localhost',
            port=url.port or 5432,
            user=url.username or 'postgres',
            password=url.password or '',
            dbname='postgres',
        )
        conn.set_isolation_level(ISOLATION_LEVEL_AUTOCOMMIT)
        cursor = conn.cursor()

        cursor.execute("SELECT 1 FROM pg_catalog.pg_database WHERE datname = %s", (url.database,))
        exists = cursor.fetchone()

        if not exists:
            cursor.execute(sql.SQL("CREATE DATABASE {}").format(sql.Identifier(url.database)))
            logger.info(f"Database '{url.database}' created successfully")
        else:
            logger.info(f"Database '{url.database}' already exists")

        cursor.close()
        conn.close()

    except Exception as e:
        logger.error(f"Error creating database: {e}")
        raise


def create_tables(db_url: str) -> RewardStore:
    """Create all recommendation tables and the attribution scan index."""
    store = RewardStore(DatabaseConfig(url=db_url))
    try:
        store.create_schema()
        if store.engine.dialect.name == 'postgresql':
            with store.engine.begin() as conn:
                conn.execute(text("""
                    CREATE INDEX IF NOT EXISTS idx_actions_unattributed
                    ON recommendation_actions (created_at)
                    WHERE attributed_at IS NULL
                """))
        logger.info("All tables created successfully")
        return store
    except Exception as e:
        logger.error(f"Error creating tables: {e}")
        store.close()
        raise


def insert_sample_data(store: RewardStore) -> int:
    """Insert sample books for local testing."""
    try:
        count = store.upsert_books(SAMPLE_BOOKS)
        logger.info("Sample data inserted successfully")
        return count
    except Exception as e:
        logger.error(f"Error inserting sample data: {e}")
        raise


def main():
    """Main setup function."""
    print("Contextual Book Recommender - Database Setup")
    print("=" * 50)

    db_url = get_settings().database_url

    try:
        print("Creating database...")
        create_database(db_url)

        print("Creating tables...")
        store = create_tables(db_url)

        print("Inserting sample data...")
        insert_sample_data(store)
        store.close()

        print("\nDatabase setup completed successfully!")
        print(f"Database URL: {make_url(db_url).render_as_string(hide_password=True)}")

    except Exception as e:
        print(f"Database setup failed: {e}")
        raise


if __name__ == "__main__":
    main()
