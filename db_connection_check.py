import sys

from sqlalchemy import create_engine, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from pos_ledger.config import settings
from pos_ledger.db import init_db
from pos_ledger.models import Account


def main(argv: list[str]) -> int:
    database_url = settings.database_url
    print(f"DATABASE_URL={database_url}")
    engine = create_engine(database_url, pool_pre_ping=True)
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        print("DB connection OK")
        if "--migrate" in argv:
            init_db(engine)
            with Session(engine) as session:
                reserve = session.scalar(
                    select(Account).where(Account.name == settings.reserve_account_name)
                )
            print(f"Schema ready, reserve account {reserve.name} balance={reserve.balance}")
    except SQLAlchemyError as exc:
        print("DB connection FAILED")
        print(exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
