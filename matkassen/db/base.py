"""
Import all models here to ensure they are registered with SQLAlchemy.
"""
# Import Base
from matkassen.models.base import Base

# Import all models
from matkassen.models.user import User
from matkassen.models.sms import SmsMessage
from matkassen.models.lock import ProcessingLock

# This allows alembic to auto-discover all models when creating migrations
