from bson import ObjectId
from bson.errors import InvalidId

from services.exceptions import RaffleNotFound


def parse_object_id(value, not_found=RaffleNotFound) -> ObjectId:
    """Parse a client supplied id; malformed ids are reported as not found."""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise not_found()
