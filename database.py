from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
import logging

# Configure logger
logger = logging.getLogger('database')

# Extensions are bound to an app in init_db; request code passes db.session
# explicitly into the ledger store instead of reaching for it ambiently.
db = SQLAlchemy()
migrate = Migrate()


def init_db(app, create_tables=False):
    """Bind SQLAlchemy and Flask-Migrate to the app.

    `create_tables` is used by tests and local SQLite runs where no Alembic
    history is applied.
    """
    try:
        db.init_app(app)
        migrate.init_app(app, db)

        uri = app.config['SQLALCHEMY_DATABASE_URI']
        dialect = uri.split('://')[0] if '://' in uri else 'unknown'
        logger.info("Ledger store dialect: %s", dialect)
        if dialect.startswith('sqlite'):
            logger.warning("SQLite ledger store: row locks are database-wide, use for dev/test only")

        if create_tables:
            # Import models so their tables are registered on the metadata
            from models import credit_model, catalog_model, usage_model, subscription_model  # noqa: F401
            with app.app_context():
                db.create_all()

        return True
    except Exception as e:
        logger.error("Database initialization error: %s", e)
        raise
