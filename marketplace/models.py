"""Document shapes for purchases, bundles and bundle content."""

from dataclasses import dataclass, field
from typing import List, Optional

STATUS_PENDING = 'pending'
STATUS_COMPLETED = 'completed'
STATUS_FAILED = 'failed'
TERMINAL_STATUSES = {STATUS_COMPLETED, STATUS_FAILED}


def _int(value, default=0):
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _float_or_none(value):
    return value if isinstance(value, (int, float)) else None


@dataclass
class Purchase:
    id: str
    buyer_id: str
    bundle_id: str
    creator_id: str = ''
    amount: int = 0
    currency: str = 'usd'
    status: str = STATUS_PENDING
    verification_method: str = ''
    created_at: Optional[float] = None
    completed_at: Optional[float] = None

    @property
    def is_completed(self):
        return self.status == STATUS_COMPLETED

    @property
    def is_terminal(self):
        return self.status in TERMINAL_STATUSES

    @classmethod
    def from_dict(cls, doc_id, data):
        data = data or {}
        return cls(
            id=str(data.get('id') or doc_id),
            buyer_id=str(data.get('buyer_id', '') or ''),
            bundle_id=str(data.get('bundle_id', '') or ''),
            creator_id=str(data.get('creator_id', '') or ''),
            amount=_int(data.get('amount', 0)),
            currency=str(data.get('currency', 'usd') or 'usd').lower(),
            status=str(data.get('status', STATUS_PENDING) or STATUS_PENDING).lower(),
            verification_method=str(data.get('verification_method', '') or ''),
            created_at=_float_or_none(data.get('created_at')),
            completed_at=_float_or_none(data.get('completed_at')),
        )

    @classmethod
    def from_snapshot(cls, snapshot):
        return cls.from_dict(snapshot.id, snapshot.to_dict())

    def to_dict(self):
        return {
            'id': self.id,
            'buyer_id': self.buyer_id,
            'bundle_id': self.bundle_id,
            'creator_id': self.creator_id,
            'amount': self.amount,
            'currency': self.currency,
            'status': self.status,
            'verification_method': self.verification_method,
            'created_at': self.created_at,
            'completed_at': self.completed_at,
        }

    def to_public_dict(self):
        return {
            'id': self.id,
            'bundleId': self.bundle_id,
            'creatorId': self.creator_id,
            'amount': self.amount,
            'currency': self.currency,
            'status': self.status,
            'createdAt': self.created_at,
            'completedAt': self.completed_at,
        }


@dataclass
class ContentItem:
    id: str
    title: str
    url: str
    mime_type: str = 'application/octet-stream'
    size: int = 0

    @classmethod
    def from_dict(cls, doc_id, data):
        data = data or {}
        return cls(
            id=str(doc_id),
            title=str(data.get('title') or data.get('filename') or 'Untitled'),
            url=str(data.get('url') or data.get('file_url') or data.get('download_url') or ''),
            mime_type=str(data.get('mime_type') or data.get('content_type') or 'application/octet-stream'),
            size=_int(data.get('size', data.get('file_size', 0))),
        )

    def to_public_dict(self):
        return {
            'id': self.id,
            'title': self.title,
            'url': self.url,
            'mimeType': self.mime_type,
            'size': self.size,
        }


@dataclass
class Bundle:
    id: str
    title: str
    creator_id: str
    description: str = ''
    price: int = 0
    currency: str = 'usd'
    content_items: List[str] = field(default_factory=list)
    active: bool = True

    @classmethod
    def from_snapshot(cls, snapshot):
        data = snapshot.to_dict() or {}
        raw_items = data.get('content_items') or []
        return cls(
            id=snapshot.id,
            title=str(data.get('title') or 'Untitled bundle'),
            creator_id=str(data.get('creator_id', '') or ''),
            description=str(data.get('description', '') or ''),
            price=_int(data.get('price', 0)),
            currency=str(data.get('currency', 'usd') or 'usd').lower(),
            content_items=[str(item) for item in raw_items if str(item or '').strip()],
            active=bool(data.get('active', True)),
        )

    def to_public_dict(self):
        return {
            'id': self.id,
            'title': self.title,
            'description': self.description,
            'price': self.price,
            'currency': self.currency,
            'creatorId': self.creator_id,
            'totalItems': len(self.content_items),
        }
