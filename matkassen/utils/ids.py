# matkassen/utils/ids.py

from enum import Enum
from uuid import uuid4

class IDPrefix(str, Enum):
    SMS = "sms"
    USER = "user"
    LOCK_HOLDER = "holder"

def generate_prefixed_id(prefix: IDPrefix) -> str:
    """
    Generate a UUID string with a prefix.
    
    Args:
        prefix (IDPrefix): The entity prefix (e.g., SMS, USER).
        
    Returns:
        str: A prefixed UUID string like 'sms-xxxxxxxx-xxxx-xxxx-xxxx-xxxxxxxxxxxx'
    """
    return f"{prefix.value}-{uuid4()}"
