"""
Process-wide collaborators, built once at startup and injected into routes.
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional

from fastapi import HTTPException
from pymongo.database import Database

from catalog import Catalog
from checkout import CheckoutWorkflow, StripeProcessor
from database import ensure_indexes
from notifications import CommentFilter, Mailer, Notifier, ReceiptRenderer
from order_store import OrderStore
from orders import OrderWorkflow, run_now
from reviews import ReviewWorkflow
from users import UserDirectory

logger = logging.getLogger(__name__)

_background: Optional[ThreadPoolExecutor] = None


def run_in_background(fn: Callable, *args):
    global _background
    if _background is None:
        _background = ThreadPoolExecutor(max_workers=4, thread_name_prefix="notify")
    _background.submit(fn, *args)


def shutdown_background():
    """Wait for queued notifications to go out and release the worker threads."""
    global _background
    if _background is not None:
        _background.shutdown(wait=True)
        _background = None


class Services:
    def __init__(self, database: Database, processor: Optional[StripeProcessor] = None,
                 mailer: Optional[Mailer] = None, renderer: Optional[ReceiptRenderer] = None,
                 comment_filter: Optional[CommentFilter] = None, dispatch: Callable = run_now):
        self.database = database
        self.catalog = Catalog(database)
        self.orders = OrderStore(database)
        self.users = UserDirectory(database)
        self.processor = processor or StripeProcessor()
        self.notifier = Notifier(mailer or Mailer(), renderer or ReceiptRenderer())
        self.order_workflow = OrderWorkflow(self.catalog, self.orders, self.users, self.notifier, dispatch)
        self.checkout = CheckoutWorkflow(self.catalog, self.orders, self.processor, self.notifier, dispatch)
        self.reviews = ReviewWorkflow(self.catalog, self.orders, comment_filter or CommentFilter())
        ensure_indexes(database)


_services: Optional[Services] = None


def init_services(database: Optional[Database]) -> Optional[Services]:
    global _services
    if database is None:
        logger.warning("DATABASE_URL/DATABASE_NAME not set, API will answer 500")
        return None
    _services = Services(database, dispatch=run_in_background)
    return _services


def get_services() -> Services:
    if _services is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return _services
