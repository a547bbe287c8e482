# Overview: Flask extension instances for the ledger database and its migrations.

from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from sqlalchemy import MetaData

# Constraint names from db.create_all() match the Alembic revision
LEDGER_NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
}

db = SQLAlchemy(metadata=MetaData(naming_convention=LEDGER_NAMING_CONVENTION))
migrate = Migrate()
