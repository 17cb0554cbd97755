"""Firestore accessors for the purchases collection."""

from google.cloud.firestore_v1 import Query

from .query_utils import apply_equals

COLLECTION = 'purchases'


def doc_ref(db, purchase_id):
    return db.collection(COLLECTION).document(purchase_id)


def get_doc(db, purchase_id, timeout=None):
    return doc_ref(db, purchase_id).get(timeout=timeout)


def create_doc(db, purchase_id, data, timeout=None):
    """Create-if-absent. Raises google.api_core AlreadyExists when the id is taken."""
    return doc_ref(db, purchase_id).create(data, timeout=timeout)


def update_if_unchanged(db, purchase_id, updates, last_update_time, timeout=None):
    """Update guarded by a last_update_time precondition.

    Raises google.api_core FailedPrecondition when another writer got there first.
    """
    option = db.write_option(last_update_time=last_update_time)
    return doc_ref(db, purchase_id).update(updates, option=option, timeout=timeout)


def query_completed_for_bundle(db, buyer_id, bundle_id, limit=1, timeout=None):
    query = apply_equals(db.collection(COLLECTION), buyer_id=buyer_id, bundle_id=bundle_id, status='completed')
    query = query.order_by('created_at', direction=Query.DESCENDING).limit(limit)
    return list(query.stream(timeout=timeout))


def list_completed_by_buyer_recent(db, buyer_id, limit, timeout=None):
    query = apply_equals(db.collection(COLLECTION), buyer_id=buyer_id, status='completed')
    query = query.order_by('created_at', direction=Query.DESCENDING).limit(limit)
    return list(query.stream(timeout=timeout))
