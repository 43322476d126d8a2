from drayage.core.store.postgres import PostgresStore

__all__ = [
    'PostgresStore',
]
