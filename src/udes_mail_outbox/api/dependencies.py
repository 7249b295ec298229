"""Dependencies for the database connection"""
from src.udes_mail_outbox.config import DatabaseConfig, load_database_config
from src.udes_mail_outbox.repositories.database import get_session_maker


def get_db():
    """Function to get the database session."""
    config: DatabaseConfig = load_database_config()
    db = get_session_maker(config.sqlalchemy_connection_string, config.sqlalchemy_echo)()
    try:
        yield db
    finally:
        db.close()
