"""
expenseflow/extensions.py

Unbound Flask extension instances.

Models, the ledger and the approval core import `db` from here; create_app()
binds every instance to the application.
"""

from flask_login import LoginManager
from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy
from flask_wtf import CSRFProtect

db = SQLAlchemy()
migrate = Migrate()
login_manager = LoginManager()
csrf = CSRFProtect()
