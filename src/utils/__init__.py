"""Porter - Shared utilities."""


def quote_identifier(name: str) -> str:
    """Backtick-quote a MySQL identifier.

    Any character MySQL accepts in a quoted identifier passes through (hyphens,
    spaces, dots, non-ASCII); an embedded backtick is doubled.

    Args:
        name: Table or column name as reported by the server

    Returns:
        Quoted identifier (e.g., '`order-items`')

    Raises:
        ValueError: If the identifier is empty
    """
    if not name:
        raise ValueError("SQL identifier must not be empty")
    return "`" + name.replace("`", "``") + "`"
