"""Entitlement checks and exactly-once access grants for purchased bundles.

A purchase document is keyed by the payment reference (Checkout Session or
PaymentIntent id). Grants are made safe against duplicate webhook deliveries
and success-page races with Firestore's own conditional writes:

* no document yet   -> ``create`` (fails with AlreadyExists if someone won)
* pending document  -> ``update`` guarded by ``last_update_time``

A lost race is reported internally as ``Conflict``; the grant loop re-reads
the document and answers with the already-granted result instead.
"""

import logging
import time
from collections import namedtuple

from google.api_core import exceptions as gcp_exceptions

from marketplace.errors import (
    Conflict,
    Forbidden,
    MetadataMismatch,
    NotFound,
    PaymentNotConfirmed,
    Unauthenticated,
    UpstreamUnavailable,
)
from marketplace.logging_config import log_event
from marketplace.models import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    Bundle,
    ContentItem,
    Purchase,
)
from marketplace.repositories import bundles_repo, purchases_repo, users_repo

AccessResult = namedtuple('AccessResult', ['has_access', 'purchase'])
GrantResult = namedtuple('GrantResult', ['granted', 'already_granted', 'purchase'])

_RETRYABLE_STORE_ERRORS = (
    gcp_exceptions.ServerError,
    gcp_exceptions.TooManyRequests,
    gcp_exceptions.RetryError,
)

_BUNDLE_METADATA_KEYS = ('bundle_id', 'bundleId', 'productBoxId')
_BUYER_METADATA_KEYS = ('buyer_id', 'buyerUid', 'uid')
_CREATOR_METADATA_KEYS = ('creator_id', 'creatorId')


def _first_metadata_value(metadata, keys):
    for key in keys:
        value = str(metadata.get(key, '') or '').strip()
        if value:
            return value
    return ''


class EntitlementService:
    def __init__(self, *, db, payments, logger=None, time_module=time, store_timeout=10.0, max_write_attempts=3):
        self.db = db
        self.payments = payments
        self.logger = logger or logging.getLogger('marketplace.entitlements')
        self.time_module = time_module
        self.store_timeout = store_timeout
        self.max_write_attempts = max(1, int(max_write_attempts))

    def _store(self, fn, *args, **kwargs):
        """Run a repository call with a bounded timeout and mapped errors."""
        kwargs.setdefault('timeout', self.store_timeout)
        try:
            return fn(self.db, *args, **kwargs)
        except (gcp_exceptions.AlreadyExists, gcp_exceptions.FailedPrecondition) as exc:
            raise Conflict(str(exc)) from exc
        except _RETRYABLE_STORE_ERRORS as exc:
            self.logger.warning(f"Firestore unavailable during {getattr(fn, '__name__', 'call')}: {exc}")
            raise UpstreamUnavailable(details={'upstream': 'firestore'}) from exc

    @staticmethod
    def _require_buyer(buyer_id):
        if not str(buyer_id or '').strip():
            raise Unauthenticated()

    def get_bundle(self, bundle_id):
        bundle_id = str(bundle_id or '').strip()
        if not bundle_id:
            raise NotFound('Bundle not found.')
        snapshot = self._store(bundles_repo.get_doc, bundle_id)
        if not snapshot.exists:
            raise NotFound('Bundle not found.', {'bundle_id': bundle_id})
        return Bundle.from_snapshot(snapshot)

    def _access_for(self, buyer_id, bundle):
        docs = self._store(purchases_repo.query_completed_for_bundle, buyer_id, bundle.id, limit=1)
        if not docs:
            return AccessResult(False, None)
        return AccessResult(True, Purchase.from_snapshot(docs[0]))

    def check_access(self, buyer_id, bundle_id):
        self._require_buyer(buyer_id)
        bundle = self.get_bundle(bundle_id)
        return self._access_for(buyer_id, bundle)

    def get_unlocked_content(self, buyer_id, bundle_id):
        self._require_buyer(buyer_id)
        bundle = self.get_bundle(bundle_id)
        if not self._access_for(buyer_id, bundle).has_access:
            log_event(self.logger, logging.INFO, 'content_access_denied', buyer_id=buyer_id, bundle_id=bundle.id)
            raise Forbidden()
        items = []
        snapshots = self._store(bundles_repo.get_content_docs, bundle.content_items)
        for content_id, snapshot in zip(bundle.content_items, snapshots):
            if snapshot is None or not snapshot.exists:
                self.logger.warning(f"Bundle {bundle.id} references missing content item {content_id}")
                continue
            items.append(ContentItem.from_dict(content_id, snapshot.to_dict()))
        return items

    def _ensure_same_owner(self, purchase, buyer_id, bundle):
        if purchase.buyer_id != buyer_id or purchase.bundle_id != bundle.id:
            log_event(
                self.logger, logging.WARNING, 'purchase_owner_mismatch',
                payment_reference=purchase.id, buyer_id=buyer_id, bundle_id=bundle.id,
            )
            raise MetadataMismatch()

    def _ensure_metadata_matches(self, payment, buyer_id, bundle):
        metadata = payment.metadata or {}
        mismatched = []
        if _first_metadata_value(metadata, _BUNDLE_METADATA_KEYS) != bundle.id:
            mismatched.append('bundle_id')
        if _first_metadata_value(metadata, _BUYER_METADATA_KEYS) != buyer_id:
            mismatched.append('buyer_id')
        creator_id = _first_metadata_value(metadata, _CREATOR_METADATA_KEYS)
        if creator_id and bundle.creator_id and creator_id != bundle.creator_id:
            mismatched.append('creator_id')
        if mismatched:
            log_event(
                self.logger, logging.WARNING, 'payment_metadata_mismatch',
                payment_reference=payment.reference, fields=mismatched, bundle_id=bundle.id,
            )
            raise MetadataMismatch(details={'fields': mismatched})

    def grant_access(self, buyer_id, bundle_id, payment_reference, verification_method='webhook'):
        self._require_buyer(buyer_id)
        reference = str(payment_reference or '').strip()
        if not reference:
            raise NotFound('Payment reference not found.')
        bundle = self.get_bundle(bundle_id)

        payment = None
        for attempt in range(self.max_write_attempts):
            snapshot = self._store(purchases_repo.get_doc, reference)
            existing = Purchase.from_snapshot(snapshot) if snapshot.exists else None
            if existing is not None:
                self._ensure_same_owner(existing, buyer_id, bundle)
                if existing.is_completed:
                    log_event(self.logger, logging.INFO, 'grant_already_processed', payment_reference=reference, attempt=attempt)
                    return GrantResult(False, True, existing)
                if existing.status == STATUS_FAILED:
                    raise PaymentNotConfirmed(details={'payment_reference': reference})

            if payment is None:
                payment = self.payments.retrieve_payment(reference)
                self._ensure_metadata_matches(payment, buyer_id, bundle)
                if not payment.paid:
                    log_event(
                        self.logger, logging.INFO, 'grant_payment_unconfirmed',
                        payment_reference=reference, payment_status=payment.status,
                    )
                    raise PaymentNotConfirmed(details={'payment_reference': reference})

            # One completed purchase per buyer and bundle; a second payment is left for refund.
            owned = self._store(purchases_repo.query_completed_for_bundle, buyer_id, bundle.id, limit=1)
            if owned and owned[0].id != reference:
                prior = Purchase.from_snapshot(owned[0])
                log_event(
                    self.logger, logging.WARNING, 'duplicate_payment_for_owned_bundle',
                    payment_reference=reference, owned_by_reference=prior.id, buyer_id=buyer_id,
                    bundle_id=bundle.id, amount=payment.amount_total, currency=payment.currency,
                )
                return GrantResult(False, True, prior)

            now_ts = self.time_module.time()
            purchase = Purchase(
                id=reference,
                buyer_id=buyer_id,
                bundle_id=bundle.id,
                creator_id=bundle.creator_id,
                amount=payment.amount_total,
                currency=payment.currency or bundle.currency,
                status=STATUS_COMPLETED,
                verification_method=str(verification_method or ''),
                created_at=(existing.created_at if existing and existing.created_at else now_ts),
                completed_at=now_ts,
            )
            try:
                if existing is None:
                    self._store(purchases_repo.create_doc, reference, purchase.to_dict())
                else:
                    self._store(
                        purchases_repo.update_if_unchanged,
                        reference,
                        {
                            'status': STATUS_COMPLETED,
                            'amount': purchase.amount,
                            'currency': purchase.currency,
                            'verification_method': purchase.verification_method,
                            'completed_at': now_ts,
                        },
                        snapshot.update_time,
                    )
            except Conflict:
                log_event(self.logger, logging.INFO, 'grant_write_race_lost', payment_reference=reference, attempt=attempt)
                continue

            log_event(
                self.logger, logging.INFO, 'access_granted',
                payment_reference=reference, buyer_id=buyer_id, bundle_id=bundle.id,
                amount=purchase.amount, currency=purchase.currency, verification_method=purchase.verification_method,
            )
            self._record_sale(purchase)
            return GrantResult(True, False, purchase)

        # Contended past every attempt without ever observing a completed record.
        raise UpstreamUnavailable('Purchase is being updated concurrently. Please retry.', {'payment_reference': reference})

    def _record_sale(self, purchase):
        now_ts = self.time_module.time()
        try:
            bundles_repo.increment_sales(self.db, purchase.bundle_id, purchase.amount, now_ts, timeout=self.store_timeout)
        except Exception as exc:
            self.logger.warning(f"Could not update sales counters for bundle {purchase.bundle_id}: {exc}")
        if not purchase.creator_id:
            return
        try:
            users_repo.increment_creator_sales(self.db, purchase.creator_id, purchase.amount, now_ts, timeout=self.store_timeout)
        except Exception as exc:
            self.logger.warning(f"Could not update sales counters for creator {purchase.creator_id}: {exc}")

    def record_pending(self, payment_reference, buyer_id, bundle, amount=None, currency=None):
        """Write the pending record for a freshly created checkout; no-op if one exists."""
        purchase = Purchase(
            id=payment_reference,
            buyer_id=buyer_id,
            bundle_id=bundle.id,
            creator_id=bundle.creator_id,
            amount=int(bundle.price if amount is None else amount),
            currency=(currency or bundle.currency),
            status=STATUS_PENDING,
            verification_method='checkout',
            created_at=self.time_module.time(),
        )
        try:
            self._store(purchases_repo.create_doc, payment_reference, purchase.to_dict())
        except Conflict:
            self.logger.info(f"Pending purchase {payment_reference} already recorded.")
        return purchase

    def mark_failed(self, payment_reference, reason=''):
        """Move a pending purchase to failed. Terminal records are left alone."""
        reference = str(payment_reference or '').strip()
        if not reference:
            return None
        for _attempt in range(self.max_write_attempts):
            snapshot = self._store(purchases_repo.get_doc, reference)
            if not snapshot.exists:
                return None
            purchase = Purchase.from_snapshot(snapshot)
            if purchase.is_terminal:
                return purchase
            try:
                self._store(
                    purchases_repo.update_if_unchanged,
                    reference,
                    {'status': STATUS_FAILED, 'failure_reason': str(reason or '')[:200], 'failed_at': self.time_module.time()},
                    snapshot.update_time,
                )
            except Conflict:
                continue
            purchase.status = STATUS_FAILED
            log_event(self.logger, logging.INFO, 'purchase_failed', payment_reference=reference, reason=reason)
            return purchase
        return None

    def purchase_history(self, buyer_id, limit=50):
        self._require_buyer(buyer_id)
        docs = self._store(purchases_repo.list_completed_by_buyer_recent, buyer_id, limit)
        return [Purchase.from_snapshot(doc) for doc in docs]
