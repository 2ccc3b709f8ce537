import asyncpg
from typing import Optional
import logging

logger = logging.getLogger(__name__)

# Global database pool (set in main.py lifespan)
db_pool: Optional[asyncpg.Pool] = None


def set_db_pool(pool):
    """Set the global database pool"""
    global db_pool
    db_pool = pool


async def init_db(pool: asyncpg.Pool):
    """Initialize categorization tables"""
    if not pool:
        return

    set_db_pool(pool)

    async with pool.acquire() as connection:
        # Learned merchant substrings, reinforced by feedback
        await connection.execute("""
            CREATE TABLE IF NOT EXISTS merchant_patterns (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                pattern VARCHAR(255) UNIQUE NOT NULL,
                category VARCHAR(100) NOT NULL,
                confidence_score DECIMAL(4,3) NOT NULL DEFAULT 0.700
                    CHECK (confidence_score >= 0 AND confidence_score <= 1),
                usage_count INTEGER NOT NULL DEFAULT 0 CHECK (usage_count >= 0),
                created_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP
            )
        """)

        # Static keyword/merchant rules
        await connection.execute("""
            CREATE TABLE IF NOT EXISTS default_category_rules (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                rule_type VARCHAR(20) NOT NULL CHECK (rule_type IN ('keyword', 'merchant')),
                rule_value VARCHAR(255) NOT NULL,
                category VARCHAR(100) NOT NULL,
                confidence_score DECIMAL(4,3) NOT NULL
                    CHECK (confidence_score >= 0 AND confidence_score <= 1),
                transaction_type_id INTEGER NOT NULL DEFAULT 1,
                is_active BOOLEAN DEFAULT true,
                created_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP,
                UNIQUE(rule_type, rule_value, transaction_type_id)
            )
        """)

        # Verified training corpus
        await connection.execute("""
            CREATE TABLE IF NOT EXISTS ml_training_data (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                user_id VARCHAR(255),
                description TEXT NOT NULL,
                category VARCHAR(100) NOT NULL,
                amount DECIMAL(15,2) DEFAULT 0.00,
                transaction_type_id INTEGER NOT NULL DEFAULT 1,
                processed_features TEXT[],
                is_verified BOOLEAN DEFAULT false,
                created_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP
            )
        """)

        # Append-only feedback audit trail
        await connection.execute("""
            CREATE TABLE IF NOT EXISTS categorization_feedback (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                user_id VARCHAR(255) NOT NULL,
                description TEXT NOT NULL,
                suggested_category VARCHAR(100),
                actual_category VARCHAR(100) NOT NULL,
                was_accepted BOOLEAN NOT NULL,
                confidence_score DECIMAL(4,3),
                amount DECIMAL(15,2),
                merchant_pattern VARCHAR(255),
                created_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP
            )
        """)

        # Categorized transactions (historical training data and per-user history)
        await connection.execute("""
            CREATE TABLE IF NOT EXISTS transactions (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                user_id VARCHAR(255),
                description TEXT NOT NULL,
                category VARCHAR(100),
                amount DECIMAL(15,2) NOT NULL DEFAULT 0.00,
                transaction_type_id INTEGER NOT NULL DEFAULT 1,
                created_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP
            )
        """)

        # Successful retrain runs; the latest start time gates the next run
        await connection.execute("""
            CREATE TABLE IF NOT EXISTS categorizer_retrain_runs (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                started_at TIMESTAMP WITH TIME ZONE NOT NULL,
                sample_count INTEGER NOT NULL DEFAULT 0,
                created_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP
            )
        """)

        # Create indexes for performance
        await connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_merchant_patterns_confidence ON merchant_patterns(confidence_score DESC)
        """)
        await connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_ml_training_data_verified ON ml_training_data(is_verified)
        """)
        await connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_categorization_feedback_created_at ON categorization_feedback(created_at)
        """)
        await connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_transactions_user_id ON transactions(user_id, created_at DESC)
        """)

        logger.info("✅ Categorization tables initialized")


async def close_db():
    """Close database connections"""
    global db_pool
    if db_pool:
        await db_pool.close()
        db_pool = None
