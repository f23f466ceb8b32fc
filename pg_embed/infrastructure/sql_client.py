"""psycopg2 implementation of the AdminClient port."""

import logging
from typing import Sequence

import psycopg2

from ..application.domain import AdminClient
from ..application.exceptions import ExtensionInstallError


class PsycopgAdminClient(AdminClient):
    """An administrative connection to a local instance, opened per call."""

    def __init__(
        self,
        host: str,
        port: int,
        user: str,
        dbname: str = "postgres",
        connect_timeout: int = 2,
    ):
        self.logger = logging.getLogger(self.__class__.__name__)
        self.host = host
        self.port = port
        self.user = user
        self.dbname = dbname
        self.connect_timeout = connect_timeout

    def connect(self):
        return psycopg2.connect(
            host=self.host,
            port=self.port,
            user=self.user,
            dbname=self.dbname,
            connect_timeout=self.connect_timeout,
        )

    def probe(self) -> bool:
        """True once the server completes a login; False while starting."""
        try:
            conn = self.connect()
        except psycopg2.OperationalError:
            return False
        conn.close()
        return True

    def execute(self, statements: Sequence[str]):
        """
        Run statements in order in autocommit mode.

        Raises:
            ExtensionInstallError: On the first failing statement; later
                                   statements are not run.
        """
        try:
            conn = self.connect()
        except psycopg2.Error as e:
            raise ExtensionInstallError(
                f"Cannot connect: {e}", port=self.port
            ) from e

        try:
            conn.autocommit = True
            with conn.cursor() as cursor:
                for statement in statements:
                    self.logger.info(f"Executing: {statement}")
                    try:
                        cursor.execute(statement)
                    except psycopg2.Error as e:
                        raise ExtensionInstallError(
                            f"Statement failed: {str(e).strip()}",
                            statement=statement,
                            port=self.port,
                        ) from e
        finally:
            conn.close()
