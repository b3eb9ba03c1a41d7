from db.models.transfer import Transfer

__all__ = ["Transfer"]
