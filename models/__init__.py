"""Models package."""

from .user import User
from .document_request import DocumentRequest
from .response import Response
from .comment import Comment
from .engagement import Like, SavedRequest
from .notification import Notification
from .points_ledger import PointsLedger
