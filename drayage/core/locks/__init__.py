from drayage.core.locks.service import LockInfo, LockService, make_holder_id

__all__ = [
    'LockInfo',
    'LockService',
    'make_holder_id',
]
