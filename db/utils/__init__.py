from .json_type import JSONType
from .time import utcnow

__all__ = ["JSONType", "utcnow"]
