# create_tables.py
import logging

from db import STORE_READ_ONLY, SessionLocal, engine
from models import Base
from observability import setup_structured_logging
from registry import DEFAULT_PROMO_CODES
from stores import SqlRegistryStore

logger = logging.getLogger(__name__)


def init_db(bind=engine, store: SqlRegistryStore | None = None):
    """Create the tables and seed the default codes into an empty catalogue."""
    if store is None:
        store = SqlRegistryStore(SessionLocal, writable=not STORE_READ_ONLY)
    if not store.writable:
        logger.warning("Durable store is read-only, skipping table creation and seeding")
        return

    Base.metadata.create_all(bind=bind)

    if store.list_promo_codes():
        return
    store.replace_promo_codes(DEFAULT_PROMO_CODES)
    logger.info("Seeded %d default promo codes", len(DEFAULT_PROMO_CODES))


def main():
    setup_structured_logging()
    init_db()

if __name__ == "__main__":
    main()
