"""Firestore accessors for users collection."""

from google.cloud.firestore_v1 import Increment


def doc_ref(db, uid):
    return db.collection('users').document(uid)


def get_doc(db, uid, timeout=None):
    return doc_ref(db, uid).get(timeout=timeout)


def increment_creator_sales(db, uid, amount, now_ts, timeout=None):
    return doc_ref(db, uid).update({
        'total_sales': Increment(1),
        'total_revenue': Increment(int(amount or 0)),
        'last_sale_at': now_ts,
    }, timeout=timeout)
