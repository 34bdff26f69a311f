import logging
from threading import Lock

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import declarative_base, sessionmaker

from booking_api.core import config

logger = logging.getLogger(__name__)

DATABASE_URL = config.DATABASE_URL

_connect_args = {'check_same_thread': False} if DATABASE_URL.startswith('sqlite') else {}
engine = create_engine(DATABASE_URL, connect_args=_connect_args, pool_pre_ping=True)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

Base = declarative_base()

_schema_lock = Lock()
_slot_schema_checked = False


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def ensure_slot_schema() -> None:
    """Bring an existing ``slots`` table up to date.

    Older deployments created ``slots`` without ``service_id`` and without the
    ``(professional_id, start_time)`` uniqueness that slot materialization
    relies on.
    """
    global _slot_schema_checked

    if _slot_schema_checked:
        return

    with _schema_lock:
        if _slot_schema_checked:
            return

        inspector = inspect(engine)

        if 'slots' not in inspector.get_table_names():
            _slot_schema_checked = True
            return

        existing_columns = {column['name'] for column in inspector.get_columns('slots')}
        migration_steps = [
            ('service_id', 'ALTER TABLE slots ADD COLUMN service_id INTEGER REFERENCES services(id) ON DELETE SET NULL'),
        ]

        with engine.begin() as connection:
            for column_name, statement in migration_steps:
                if column_name not in existing_columns:
                    logger.info('Adding missing column slots.%s', column_name)
                    connection.execute(text(statement))
            connection.execute(
                text('CREATE INDEX IF NOT EXISTS idx_slots_service_id ON slots(service_id)')
            )
            connection.execute(
                text('CREATE INDEX IF NOT EXISTS idx_slots_available_start ON slots(professional_id, is_available, start_time)')
            )
            connection.execute(
                text(
                    'CREATE UNIQUE INDEX IF NOT EXISTS uq_slots_professional_start '
                    'ON slots(professional_id, start_time)'
                )
            )

        _slot_schema_checked = True
