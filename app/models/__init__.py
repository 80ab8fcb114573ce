from app.models.user import User
from app.models.principal import Principal
from app.models.activity import Post, Vote, Comment
from app.models.segment import Segment, UserSegment

__all__ = [
    "User",
    "Principal",
    "Post",
    "Vote",
    "Comment",
    "Segment",
    "UserSegment",
]
