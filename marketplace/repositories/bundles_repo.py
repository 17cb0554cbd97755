"""Firestore accessors for bundles and their content items."""

from google.cloud.firestore_v1 import Increment

BUNDLES_COLLECTION = 'bundles'
CONTENT_COLLECTION = 'uploads'


def doc_ref(db, bundle_id):
    return db.collection(BUNDLES_COLLECTION).document(bundle_id)


def get_doc(db, bundle_id, timeout=None):
    return doc_ref(db, bundle_id).get(timeout=timeout)


def content_doc_ref(db, content_id):
    return db.collection(CONTENT_COLLECTION).document(content_id)


def get_content_docs(db, content_ids, timeout=None):
    """Fetch content docs, returned in the order of ``content_ids``."""
    if not content_ids:
        return []
    refs = [content_doc_ref(db, content_id) for content_id in content_ids]
    by_id = {snapshot.id: snapshot for snapshot in db.get_all(refs, timeout=timeout)}
    return [by_id.get(content_id) for content_id in content_ids]


def increment_sales(db, bundle_id, amount, now_ts, timeout=None):
    return doc_ref(db, bundle_id).update({
        'total_sales': Increment(1),
        'total_revenue': Increment(int(amount or 0)),
        'last_purchase_at': now_ts,
    }, timeout=timeout)
