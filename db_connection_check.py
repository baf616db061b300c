import argparse

from sqlalchemy import create_engine, func, select, text
from sqlalchemy.exc import SQLAlchemyError

from gymdesk.config import settings
from gymdesk.db import Base
from gymdesk.models import SystemSetting


def main() -> None:
    parser = argparse.ArgumentParser(description="Check the gymdesk database connection")
    parser.add_argument("--create-tables", action="store_true", help="create missing tables")
    args = parser.parse_args()

    database_url = settings.database_url
    print(f"DATABASE_URL={database_url}")
    engine = create_engine(database_url, pool_pre_ping=True)
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        print("DB connection OK")
        if args.create_tables:
            Base.metadata.create_all(bind=engine)
            print("tables created")
        with engine.connect() as conn:
            setting_rows = conn.execute(select(func.count()).select_from(SystemSetting)).scalar_one()
        print(f"system_settings rows: {setting_rows}")
    except SQLAlchemyError as exc:
        print("DB connection FAILED")
        print(exc)


if __name__ == "__main__":
    main()
