"""
Database connection and transaction management using raw PostgreSQL
Every unit of work borrows one pooled connection and always gives it back
"""
import logging
from contextlib import contextmanager
from pathlib import Path
from urllib.parse import unquote, urlsplit

import psycopg2
from psycopg2 import extras, pool, sql
from psycopg2.extensions import ISOLATION_LEVEL_READ_COMMITTED

from backend.config import Settings
from backend.logging_config import setup_logging

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_NAME = 'railway_reservation'
SCHEMA_FILE = Path(__file__).parent / 'schema.sql'


class DatabaseManager:
    """
    Database manager with transaction support and connection pooling

    An instance is the storage session handle passed to the services; there is
    no module-level instance.
    """

    def __init__(self, database_url=None, min_connections=None, max_connections=None):
        """
        Initialize database manager

        Args:
            database_url: Database connection URL
            min_connections: Connections opened eagerly by the pool
            max_connections: Upper bound of concurrently borrowed connections

        Arguments left out are taken from ``Settings.from_env()``.
        """
        if None in (database_url, min_connections, max_connections):
            defaults = Settings.from_env()
            database_url = database_url or defaults.database_url
            min_connections = min_connections or defaults.pool_min
            max_connections = max_connections or defaults.pool_max

        self.database_url = database_url
        self.min_connections = min_connections
        self.max_connections = max_connections
        self.db_config = self._parse_database_url(self.database_url)

        try:
            self.connection_pool = pool.ThreadedConnectionPool(
                minconn=min_connections,
                maxconn=max_connections,
                **self.db_config
            )
        except psycopg2.Error as e:
            raise RuntimeError(f"Failed to create database connection pool: {e}") from e

        logger.debug("Connection pool ready for %s/%s (max %d)",
                     self.db_config['host'], self.db_config['database'], max_connections)

    @classmethod
    def from_settings(cls, settings: Settings) -> 'DatabaseManager':
        """Build a manager from the URL and pool bounds in ``settings``"""
        return cls(
            database_url=settings.database_url,
            min_connections=settings.pool_min,
            max_connections=settings.pool_max,
        )

    @staticmethod
    def _parse_database_url(url):
        """Parse a postgresql:// URL into psycopg2 connection parameters"""
        parts = urlsplit(url)
        if parts.scheme not in ('postgresql', 'postgres'):
            return {
                'database': DEFAULT_DATABASE_NAME,
                'host': 'localhost',
                'port': 5432,
            }

        config = {
            'database': parts.path.lstrip('/') or DEFAULT_DATABASE_NAME,
            'host': parts.hostname or 'localhost',
            'port': parts.port or 5432,
        }
        if parts.username:
            config['user'] = unquote(parts.username)
        if parts.password:
            config['password'] = unquote(parts.password)
        return config

    def get_connection(self):
        """Get a connection from the pool"""
        return self.connection_pool.getconn()

    def return_connection(self, conn):
        """Return a connection to the pool, discarding it if it is broken"""
        self.connection_pool.putconn(conn, close=bool(conn.closed))

    def close_all_connections(self):
        """Close all connections in the pool"""
        if self.connection_pool and not self.connection_pool.closed:
            self.connection_pool.closeall()

    def create_tables(self):
        """Create all database tables from schema"""
        if not SCHEMA_FILE.exists():
            raise FileNotFoundError(f"Schema file not found: {SCHEMA_FILE}")

        schema_sql = SCHEMA_FILE.read_text()

        with self.transaction() as conn:
            with conn.cursor() as cursor:
                cursor.execute(schema_sql)
        logger.info("Schema created in %s", self.db_config['database'])

    def drop_tables(self):
        """Drop all database tables (use with caution!)"""
        with self.transaction() as conn:
            with conn.cursor() as cursor:
                cursor.execute("""
                    SELECT tablename FROM pg_tables
                    WHERE schemaname = 'public'
                """)
                tables = [row[0] for row in cursor.fetchall()]

                for table in tables:
                    cursor.execute(sql.SQL("DROP TABLE IF EXISTS {} CASCADE").format(
                        sql.Identifier(table)
                    ))

    @contextmanager
    def transaction(self, isolation_level=None):
        """
        Provide a transactional scope with a connection

        The transaction commits when the block exits normally and rolls back
        on any exception, which is then re-raised.

        Usage:
            with db.transaction() as conn:
                with conn.cursor() as cursor:
                    cursor.execute("INSERT INTO users ...")
        """
        conn = self.get_connection()
        try:
            conn.set_isolation_level(isolation_level or ISOLATION_LEVEL_READ_COMMITTED)
            yield conn
            conn.commit()
        except BaseException:
            if not conn.closed:
                conn.rollback()
            raise
        finally:
            self.return_connection(conn)

    @contextmanager
    def get_cursor(self, isolation_level=None, cursor_factory=None):
        """
        Get a dict cursor inside its own transaction

        Usage:
            with db.get_cursor() as cursor:
                cursor.execute("SELECT * FROM users")
                results = cursor.fetchall()
        """
        with self.transaction(isolation_level) as conn:
            with conn.cursor(cursor_factory=cursor_factory or extras.RealDictCursor) as cursor:
                yield cursor


def init_db(settings=None):
    """Initialize database with tables"""
    db_manager = DatabaseManager.from_settings(settings or Settings.from_env())
    try:
        db_manager.create_tables()
    finally:
        db_manager.close_all_connections()


def main():
    """Console entry point: configure logging, then create the schema"""
    settings = Settings.from_env()
    setup_logging(settings)
    init_db(settings)


if __name__ == "__main__":
    main()
