from typing import Optional

from ..models.models import User


def user_label(user: Optional[User]) -> Optional[str]:
    if user is None:
        return None
    return user.display_name or user.email

