import json
import logging
from datetime import datetime
from typing import Optional

import mysql.connector
from mysql.connector import errorcode, pooling
from retrying import retry

from .attr_store import AttrStore, identity_hash

TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


class MysqlAttrStore(AttrStore):
    """Attribute store backed by a MySQL `file_attrs` table."""

    def __init__(self, user, password, host, database, port=3306, pool_size=8,
                 logger: Optional[logging.Logger] = None):
        self.connect_args = dict(user=user, password=password, host=host, port=port, database=database)
        self.pool_size = pool_size
        self.connection_pool = None
        self.logger = logger or logging.getLogger(__name__)

    @classmethod
    def from_settings(cls, settings) -> 'MysqlAttrStore':
        return cls(
            user=settings.SQL_USER,
            password=settings.SQL_PASSWORD,
            host=settings.SQL_HOST,
            port=settings.SQL_PORT,
            database=settings.SQL_DATABASE,
            pool_size=settings.SQL_POOL_SIZE,
        )

    def initialize_pool(self):
        """
        Initialize the connection pool lazily if it hasn't been created yet.
        """
        if not self.connection_pool:
            self.logger.debug("Initializing connection pool...")
            try:
                self.connection_pool = pooling.MySQLConnectionPool(
                    pool_name="file_attrs_pool",
                    pool_size=self.pool_size,
                    **self.connect_args,
                )
            except mysql.connector.Error as err:
                self.logger.error(f"Failed to initialize connection pool: {err}")
                raise

    @retry(retry_on_exception=lambda e: isinstance(e, mysql.connector.Error), stop_max_attempt_number=3, wait_exponential_multiplier=200)
    def get_cursor(self):
        """
        Get a connection from the pool and create a cursor.
        """
        self.initialize_pool()
        connection = self.connection_pool.get_connection()
        return connection.cursor(buffered=True), connection

    def close_connection(self, connection):
        """
        Return a connection to the pool.
        """
        if connection:
            try:
                connection.close()
            except mysql.connector.Error as e:
                self.logger.debug(f"Error closing connection: {e}")

    def create_tables(self):
        """
        Create the attribute table if it does not exist.
        """
        ddl = (
            "CREATE TABLE IF NOT EXISTS `file_attrs` ("
            "  identity_hash CHAR(64) NOT NULL,"
            "  attr_name VARCHAR(64) NOT NULL,"
            "  identity VARCHAR(4096),"
            "  value LONGTEXT,"
            "  updated_at DATETIME,"
            "  PRIMARY KEY (identity_hash, attr_name)"
            ") ENGINE=InnoDB"
        )
        cursor, connection = None, None
        try:
            cursor, connection = self.get_cursor()
            cursor.execute(ddl)
            connection.commit()
        except mysql.connector.Error as err:
            if err.errno == errorcode.ER_TABLE_EXISTS_ERROR:
                self.logger.debug("Table file_attrs already exists.")
            else:
                self.logger.error(f"Error creating table file_attrs: {err}")
                raise
        finally:
            if cursor:
                cursor.close()
            if connection:
                self.close_connection(connection)

    def load_attr(self, identity: str, name: str) -> Optional[dict]:
        cursor, connection = None, None
        try:
            cursor, connection = self.get_cursor()
            cursor.execute(
                "SELECT value FROM file_attrs WHERE identity_hash = %s AND attr_name = %s",
                (identity_hash(identity), name),
            )
            row = cursor.fetchone()
            if row is None or row[0] is None:
                return None
            return json.loads(row[0])
        finally:
            if cursor:
                cursor.close()
            if connection:
                self.close_connection(connection)

    def store_attr(self, identity: str, name: str, value: dict) -> None:
        cursor, connection = None, None
        try:
            cursor, connection = self.get_cursor()
            cursor.execute(
                "INSERT INTO file_attrs (identity_hash, attr_name, identity, value, updated_at) "
                "VALUES (%s, %s, %s, %s, %s) "
                "ON DUPLICATE KEY UPDATE value = VALUES(value), updated_at = VALUES(updated_at)",
                (
                    identity_hash(identity),
                    name,
                    identity,
                    json.dumps(value),
                    datetime.utcnow().strftime(TIME_FORMAT),
                ),
            )
            connection.commit()
        finally:
            if cursor:
                cursor.close()
            if connection:
                self.close_connection(connection)
