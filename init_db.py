from database import engine, Base
import models
from config import config
from seed_db import seed_mock_catalog

def init_db():
    Base.metadata.create_all(bind=engine)
    print(f"Database initialized: {', '.join(sorted(Base.metadata.tables))}")

    if config.USE_MOCK_DRIVE and config.MOCK_DRIVE_FILE:
        try:
            seed_mock_catalog(config.MOCK_DRIVE_FILE)
            print(f"Mock Drive catalog seeded at {config.MOCK_DRIVE_FILE}.")
        except OSError as e:
            print(f"Database initialized but seeding failed: {e}")

if __name__ == "__main__":
    init_db()
