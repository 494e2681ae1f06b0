from .common import *  # noqa
from .materials import *  # noqa
from .production import *  # noqa
from .inventory import *  # noqa
from .orders import *  # noqa

# Platform event-bus tables (transactional outbox + webhook subscriptions)
from app.events.outbox import *  # noqa
from app.events.subscriptions import *  # noqa
