from __future__ import annotations

import logging

from helpdesk.db.session import get_sessionmaker
from helpdesk.services.entities import ensure_entity_records, purge_invalid_entities


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(message)s")
    session = get_sessionmaker()()
    try:
        purged = purge_invalid_entities(session)
        created = ensure_entity_records(session)
        session.commit()
    finally:
        session.close()
    print(f"purged={purged}")
    print(f"created={created}")


if __name__ == "__main__":
    main()
