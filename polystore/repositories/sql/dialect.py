"""Supported SQL dialects and identifier quoting."""

from enum import StrEnum

from polystore.core.errors import UnsupportedDialectError


class Dialect(StrEnum):
    """Relational products the SQL backend supports."""

    POSTGRESQL = "postgresql"
    SQLITE = "sqlite"

    @classmethod
    def detect(cls, product_name: str) -> "Dialect":
        """Map a reported product/dialect name to a supported dialect.

        Raises:
            UnsupportedDialectError: For any other product.
        """
        product = product_name.lower()
        if "postgres" in product:
            return cls.POSTGRESQL
        if "sqlite" in product:
            return cls.SQLITE
        raise UnsupportedDialectError(product_name)


def quote(identifier: str) -> str:
    """Quote an identifier; both dialects accept double quotes."""
    return '"' + identifier.replace('"', '""') + '"'
