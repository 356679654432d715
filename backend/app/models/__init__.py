# Models package init: importing it registers every table on Base.metadata
from app.models.admin_user import AdminUser
from app.models.photo import Photo
from app.models.place import Place

__all__ = ["AdminUser", "Photo", "Place"]
