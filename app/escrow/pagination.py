"""
Pagination classes for escrow API.

Transactions are listed most recent first with cursor pagination so the
list stays stable while new transactions are created.
"""

from rest_framework.pagination import CursorPagination


class TransactionCursorPagination(CursorPagination):
    """
    Cursor pagination for transaction lists.

    Default: 20 transactions per page
    Maximum: 100 transactions per page
    """

    page_size = 20
    max_page_size = 100
    page_size_query_param = "page_size"
    ordering = ("-created_at", "-id")
    cursor_query_param = "cursor"
