from .sql import Statement, execute_query, execute_transaction

__all__ = ["Statement", "execute_query", "execute_transaction"]
