# Import models so that SQLAlchemy metadata includes them on app startup
from .user import User, user_roles  # noqa: F401
from .profile import Profile  # noqa: F401
from .subscription import SubscriptionRecord  # noqa: F401
from .usage import UsageCounters  # noqa: F401
from .audit_log import AuditLogEntry  # noqa: F401
from .archive import ArchivedUserData  # noqa: F401
from .retention import RetentionEmailMarker  # noqa: F401
