"""Firestore accessors for rate limit window counters."""

COLLECTION = 'rate_limit_counters'


def counter_doc_ref(db, counter_id, collection_name=COLLECTION):
    return db.collection(collection_name).document(counter_id)
