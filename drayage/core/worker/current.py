# drayage/core/worker/current.py
from __future__ import annotations
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from drayage.core.app import Drayage

_current_app: Optional['Drayage'] = None


def set_current_app(app: 'Drayage') -> None:
    global _current_app
    _current_app = app


def get_current_app() -> 'Drayage':
    """The app the running worker was started with; handlers use it to enqueue follow-ups."""
    if _current_app is None:
        raise RuntimeError('No current app set in this process')
    return _current_app
