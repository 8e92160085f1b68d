from .staging import StagedRecord, AuthoritativeRecord, IdMapping
from .audit import AbandonedRecord

__all__ = [
    'StagedRecord', 'AuthoritativeRecord', 'IdMapping',
    'AbandonedRecord',
]
