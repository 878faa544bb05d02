"""Pydantic schemas for request/response validation."""

from .audit import *  # noqa: F403
from .calendar import *  # noqa: F403
from .checkout import *  # noqa: F403
from .health import *  # noqa: F403
from .notification import *  # noqa: F403
from .waitlist import *  # noqa: F403
