"""
Flask extensions for the loyalty core.

The ledger, the loyalty projection and any migrations generated through
Flask-Migrate share one metadata object with a fixed constraint naming
convention, so autogenerated revisions stay stable across databases.
"""
from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import MetaData

NAMING_CONVENTION = {
    'ix': 'ix_%(column_0_label)s',
    'uq': 'uq_%(table_name)s_%(column_0_name)s',
    'ck': 'ck_%(table_name)s_%(constraint_name)s',
    'fk': 'fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s',
    'pk': 'pk_%(table_name)s',
}

# Database
db = SQLAlchemy(metadata=MetaData(naming_convention=NAMING_CONVENTION))

# Migrations (render_as_batch keeps ALTERs working on SQLite)
migrate = Migrate(render_as_batch=True)
