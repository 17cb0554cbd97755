#!/usr/bin/env python3
"""Fold legacy purchase collections into canonical purchase documents.

Older checkout flows wrote completed purchases to ``bundlePurchases``,
``productBoxPurchases``, ``unifiedPurchases`` and camelCase documents with
random ids in ``purchases``. Each completed legacy record that carries a
payment session id becomes one canonical document ``purchases/<session id>``.
Existing canonical documents are never overwritten.

Legacy writers disagree on units. An explicit cents field wins. Records from
the bundle and product box collections, and records written by the product box
flows (``buyerUid`` or ``type`` set), hold dollars. Other records hold cents
unless the amount has a fractional part.
"""

import argparse
import json
import os
from datetime import datetime
from typing import Dict, Iterable, Optional, Tuple

import firebase_admin
from firebase_admin import credentials, firestore
from google.api_core import exceptions as gcp_exceptions

LEGACY_COLLECTIONS = ('bundlePurchases', 'productBoxPurchases', 'unifiedPurchases', 'purchases')
DOLLAR_COLLECTIONS = ('bundlePurchases', 'productBoxPurchases')
DOLLAR_RECORD_TYPES = ('product_box', 'bundle')


def init_firestore():
    if os.path.exists("firebase-credentials.json"):
        cred = credentials.Certificate("firebase-credentials.json")
    else:
        raw = (os.getenv("FIREBASE_CREDENTIALS", "") or "").strip()
        if not raw:
            raise RuntimeError("Missing firebase-credentials.json and FIREBASE_CREDENTIALS env var.")
        cred = credentials.Certificate(json.loads(raw))
    if not firebase_admin._apps:
        firebase_admin.initialize_app(cred)
    return firestore.client()


def _first(data: Dict, *keys) -> str:
    for key in keys:
        value = str(data.get(key, "") or "").strip()
        if value:
            return value
    return ""


def _timestamp(value) -> Optional[float]:
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, datetime):
        return value.timestamp()
    return None


def _stored_in_dollars(data: Dict, collection: str) -> bool:
    if collection in DOLLAR_COLLECTIONS:
        return True
    # Product box writers tag records with buyerUid or type and divide amount_total by 100.
    return bool(data.get("buyerUid")) or str(data.get("type", "") or "") in DOLLAR_RECORD_TYPES


def _amount_cents(data: Dict, collection: str = "") -> int:
    for key in ("amountInCents", "amount_total"):
        if isinstance(data.get(key), (int, float)):
            return int(round(data[key]))
    value = data.get("amount", 0)
    if not isinstance(value, (int, float)):
        try:
            value = float(value or 0)
        except (TypeError, ValueError):
            return 0
    if _stored_in_dollars(data, collection) or not float(value).is_integer():
        return int(round(value * 100))
    return int(value)


def canonical_from_legacy(data: Dict, collection: str = "") -> Optional[Dict]:
    """Return the canonical purchase dict, or None when the record is unusable."""
    if "buyer_id" in data:
        return None
    if str(data.get("status", "completed") or "completed").lower() != "completed":
        return None
    session_id = _first(data, "sessionId", "stripeSessionId", "paymentIntentId")
    buyer_id = _first(data, "buyerUid", "userId", "buyerId")
    bundle_id = _first(data, "bundleId", "productBoxId", "itemId")
    if not session_id or not buyer_id or not bundle_id:
        return None
    if session_id.startswith(("test_", "pi_test_")):
        return None
    created_at = _timestamp(data.get("createdAt")) or _timestamp(data.get("purchasedAt"))
    return {
        "id": session_id,
        "buyer_id": buyer_id,
        "bundle_id": bundle_id,
        "creator_id": _first(data, "creatorId"),
        "amount": _amount_cents(data, collection),
        "currency": (_first(data, "currency") or "usd").lower(),
        "status": "completed",
        "verification_method": "migration",
        "created_at": created_at,
        "completed_at": created_at,
    }


def iter_legacy_docs(db, collections: Iterable[str]):
    for name in collections:
        for doc in db.collection(name).stream():
            yield name, doc


def migrate_legacy_purchases(db, apply_changes: bool, collections=LEGACY_COLLECTIONS) -> Tuple[int, int, int]:
    scanned = 0
    candidates = 0
    written = 0
    seen = set()
    for name, doc in iter_legacy_docs(db, collections):
        scanned += 1
        record = canonical_from_legacy(doc.to_dict() or {}, name)
        if record is None or record["id"] in seen:
            continue
        seen.add(record["id"])
        candidates += 1
        if not apply_changes:
            continue
        try:
            db.collection("purchases").document(record["id"]).create(record)
            written += 1
        except gcp_exceptions.AlreadyExists:
            continue
    return scanned, candidates, written


def main():
    parser = argparse.ArgumentParser(description="Migrate legacy purchase records to canonical purchases.")
    parser.add_argument(
        "--apply",
        action="store_true",
        help="Apply changes. Without this flag, the script runs in dry-run mode.",
    )
    args = parser.parse_args()

    db = init_firestore()
    scanned, candidates, written = migrate_legacy_purchases(db, apply_changes=args.apply)
    mode = "APPLY" if args.apply else "DRY-RUN"
    print(f"[{mode}] scanned={scanned} legacy docs, migratable={candidates}, written={written}")
    if not args.apply:
        print("No changes were written. Re-run with --apply to persist.")


if __name__ == "__main__":
    main()
