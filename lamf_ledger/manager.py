"""
Lending Manager

Orchestrates the lending core against storage: every operation loads the
entities it needs, runs the pure domain operation, and saves the results in
one storage transaction together with its audit events.

Entities are serialised per ID with an in-process lock registry, and every
save is a versioned compare-and-save, so a write based on a stale read fails
with ConcurrentModification instead of overwriting.
"""

import threading
from contextlib import contextmanager, ExitStack
from datetime import datetime, date
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple, Union

from . import applications as app_ops
from . import collateral as col_ops
from . import loans as loan_ops
from .applications import ApplicationStatus, LoanApplication
from .audit import AuditEventType, AuditTrail
from .collateral import Collateral, MutualFund
from .config import LamfConfig, get_config
from .errors import (
    ConcurrentModification, DivisionUndefined, EntityNotFound, LendingError
)
from .identifiers import (
    IdAllocator, application_id_allocator, collateral_id_allocator, loan_id_allocator
)
from .loans import Loan, LoanStatus, MarginCallStatus, Payment, PaymentMode, PrepaymentResult
from .logging_config import get_logger, log_action, setup_from_config
from .money import Numeric, ZERO, format_inr
from .overdue import sweep_overdue
from .products import LoanProduct
from .storage import StorageInterface, create_storage


logger = get_logger("lamf.manager")

# Multi-entity operations always lock in this order
_LOCK_RANK = {"loan_applications": 0, "collaterals": 1, "loans": 2}


class LendingManager:
    """
    Manages applications, collateral and loans from pledge to closure
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: Optional[AuditTrail] = None,
        config: Optional[LamfConfig] = None,
        loan_ids: Optional[IdAllocator] = None,
        application_ids: Optional[IdAllocator] = None,
        collateral_ids: Optional[IdAllocator] = None,
        payment_ids: Optional[IdAllocator] = None
    ):
        self.storage = storage
        self.config = config or get_config()
        self.audit_trail = audit_trail or AuditTrail(storage)
        self.loan_ids = loan_ids or loan_id_allocator(storage)
        self.application_ids = application_ids or application_id_allocator(storage)
        self.collateral_ids = collateral_ids or collateral_id_allocator(storage)
        self.payment_ids = payment_ids

        self.loans_table = "loans"
        self.applications_table = "loan_applications"
        self.collaterals_table = "collaterals"

        self.products: Dict[str, LoanProduct] = {}

        # (table, entity id) -> [lock, holders and waiters]
        self._locks: Dict[Tuple[str, str], List[Any]] = {}
        self._locks_guard = threading.Lock()

    @classmethod
    def from_config(cls, config: Optional[LamfConfig] = None) -> 'LendingManager':
        """Build a manager on the storage backend and logging named in the configuration"""
        config = config or get_config()
        setup_from_config(config)
        return cls(create_storage(config.storage_url), config=config)

    # Locking and persistence

    @contextmanager
    def _entity_lock(self, key: Tuple[str, str]):
        """Hold one entity's lock; the registry entry goes away with its last user"""
        with self._locks_guard:
            entry = self._locks.setdefault(key, [threading.RLock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if not entry[1]:
                    del self._locks[key]

    @contextmanager
    def _locked(self, *keys: Tuple[str, str]):
        """Hold the locks of several entities, acquired in a fixed global order"""
        ordered = sorted(set(keys), key=lambda k: (_LOCK_RANK[k[0]], k[1]))
        with ExitStack() as stack:
            for key in ordered:
                stack.enter_context(self._entity_lock(key))
            yield

    def _save(self, table: str, entity) -> None:
        expected = entity.version
        entity.version = expected + 1
        try:
            self.storage.compare_and_save(table, entity.id, entity.to_dict(), expected)
        except ConcurrentModification:
            entity.version = expected
            raise

    def _audit(self, event_type: AuditEventType, entity_type: str, entity_id: str,
               metadata: Dict[str, Any], timestamp: datetime) -> None:
        if not self.config.enable_audit_logging:
            return
        with self.storage.atomic():
            self.audit_trail.log_event(
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                metadata=metadata,
                timestamp=timestamp
            )

    def _next_payment_id(self) -> Optional[str]:
        return self.payment_ids.next() if self.payment_ids else None

    # Lookups

    def register_product(self, product: LoanProduct) -> LoanProduct:
        self.products[product.id] = product
        return product

    def get_product(self, product_id: str) -> LoanProduct:
        product = self.products.get(product_id)
        if product is None:
            raise EntityNotFound(f"Loan product {product_id} not found")
        return product

    def get_collateral(self, collateral_id: str) -> Collateral:
        data = self.storage.load(self.collaterals_table, collateral_id)
        if data is None:
            raise EntityNotFound(f"Collateral {collateral_id} not found")
        return Collateral.from_dict(data)

    def get_application(self, application_id: str) -> LoanApplication:
        data = self.storage.load(self.applications_table, application_id)
        if data is None:
            raise EntityNotFound(f"Loan application {application_id} not found")
        return LoanApplication.from_dict(data)

    def get_loan(self, loan_id: str) -> Loan:
        data = self.storage.load(self.loans_table, loan_id)
        if data is None:
            raise EntityNotFound(f"Loan {loan_id} not found")
        return Loan.from_dict(data)

    def list_loans(self, status: Optional[LoanStatus] = None) -> List[Loan]:
        if status is None:
            records = self.storage.load_all(self.loans_table)
        else:
            records = self.storage.find(self.loans_table, {'status': status.value})
        return [Loan.from_dict(data) for data in records]

    def list_collaterals(self, customer_id: Optional[str] = None) -> List[Collateral]:
        if customer_id is None:
            records = self.storage.load_all(self.collaterals_table)
        else:
            records = self.storage.find(self.collaterals_table, {'customerId': customer_id})
        return [Collateral.from_dict(data) for data in records]

    def list_applications(self, status: Optional[ApplicationStatus] = None) -> List[LoanApplication]:
        if status is None:
            records = self.storage.load_all(self.applications_table)
        else:
            records = self.storage.find(self.applications_table, {'status': status.value})
        return [LoanApplication.from_dict(data) for data in records]

    # Collateral

    def pledge_collateral(
        self,
        customer_id: str,
        mutual_fund: MutualFund,
        units: Numeric,
        nav_at_pledge: Numeric,
        ltv_percent: Numeric,
        now: datetime,
        current_nav: Optional[Numeric] = None
    ) -> Collateral:
        """Register a holding offered as collateral"""
        collateral = col_ops.create_collateral(
            collateral_id=self.collateral_ids.next(),
            customer_id=customer_id,
            mutual_fund=mutual_fund,
            units=units,
            nav_at_pledge=nav_at_pledge,
            ltv_percent=ltv_percent,
            now=now,
            current_nav=current_nav
        )
        with self.storage.atomic():
            self._save(self.collaterals_table, collateral)
            self._audit(AuditEventType.COLLATERAL_PLEDGED, "collateral", collateral.id, {
                'customer_id': customer_id,
                'isin': mutual_fund.isin,
                'units': collateral.units,
                'current_value': collateral.current_value,
                'eligible_loan_amount': collateral.eligible_loan_amount,
            }, now)

        log_action(logger, "info", f"Collateral pledged worth {format_inr(collateral.current_value)}",
                   action="pledge_collateral", resource=f"collateral/{collateral.id}")
        return collateral

    def update_nav(self, collateral_id: str, new_nav: Numeric, now: datetime) -> Tuple[Collateral, bool]:
        """
        Revalue one holding and run the margin check against its loan

        The check runs only while the linked loan is ACTIVE; a triggered check
        flags the loan's margin call. The loan's collateral value and LTV are
        refreshed whenever it is open.

        Returns:
            Tuple of (collateral, margin call triggered)
        """
        with self._locked((self.collaterals_table, collateral_id)):
            collateral = self.get_collateral(collateral_id)
            if collateral.loan_id is None:
                return self._revalue_unlinked(collateral, new_nav, now), False

            with self._locked((self.loans_table, collateral.loan_id)):
                return self._revalue_linked(collateral, new_nav, now)

    def _revalue_unlinked(self, collateral: Collateral, new_nav: Numeric, now: datetime) -> Collateral:
        col_ops.revalue(collateral, new_nav, now)
        with self.storage.atomic():
            self._save(self.collaterals_table, collateral)
            self._audit(AuditEventType.COLLATERAL_REVALUED, "collateral", collateral.id, {
                'nav': collateral.current_nav,
                'current_value': collateral.current_value,
            }, now)
        return collateral

    def _revalue_linked(self, collateral: Collateral, new_nav: Numeric, now: datetime) -> Tuple[Collateral, bool]:
        loan = self.get_loan(collateral.loan_id)
        col_ops.revalue(collateral, new_nav, now)

        triggered = False
        if loan.status == LoanStatus.ACTIVE:
            try:
                triggered = col_ops.check_margin_call(
                    collateral, loan.total_outstanding, now, self.config.margin_threshold
                )
            except DivisionUndefined:
                log_action(logger, "debug", "Margin check skipped, nothing outstanding",
                           action="update_nav", resource=f"loan/{loan.id}")
            if triggered:
                loan_ops.trigger_margin_call(loan, now)

        loan_changed = triggered
        if loan.is_open:
            loan_ops.update_ltv(loan, self._collateral_value(loan, collateral))
            loan_changed = True

        with self.storage.atomic():
            self._save(self.collaterals_table, collateral)
            if loan_changed:
                loan.updated_at = now
                self._save(self.loans_table, loan)
            self._audit(AuditEventType.COLLATERAL_REVALUED, "collateral", collateral.id, {
                'nav': collateral.current_nav,
                'current_value': collateral.current_value,
                'loan_id': loan.id,
            }, now)
            if triggered:
                self._audit(AuditEventType.MARGIN_CALL_TRIGGERED, "loan", loan.id, {
                    'collateral_id': collateral.id,
                    'collateral_value': collateral.current_value,
                    'total_outstanding': loan.total_outstanding,
                }, now)

        if triggered:
            log_action(logger, "warning", "Margin call triggered", action="margin_call",
                       resource=f"loan/{loan.id}",
                       extra={'collateral_id': collateral.id, 'current_ltv': str(loan.current_ltv)})
        return collateral, triggered

    def _collateral_value(self, loan: Loan, updated: Collateral) -> Decimal:
        total = ZERO
        for collateral_id in loan.collateral_ids:
            collateral = updated if collateral_id == updated.id else self.get_collateral(collateral_id)
            if collateral.is_active:
                total += collateral.current_value
        return total

    def bulk_nav_update(self, updates: List[Dict[str, Any]], now: datetime) -> List[Dict[str, Any]]:
        """
        Apply ``{'isin': ..., 'nav': ...}`` updates to every active holding of each ISIN

        Returns:
            One result per revalued holding
        """
        by_isin: Dict[str, List[str]] = {}
        for collateral in self.list_collaterals():
            if collateral.is_active:
                by_isin.setdefault(collateral.mutual_fund.isin, []).append(collateral.id)

        results = []
        for update in updates:
            for collateral_id in by_isin.get(update['isin'], []):
                collateral, triggered = self.update_nav(collateral_id, update['nav'], now)
                results.append({
                    'collateralId': collateral.id,
                    'isin': update['isin'],
                    'newValue': collateral.current_value,
                    'marginCallTriggered': triggered,
                })

        log_action(logger, "info", f"Bulk NAV update revalued {len(results)} collaterals",
                   action="bulk_nav_update", extra={'isins': [u['isin'] for u in updates]})
        return results

    def release_collateral(self, collateral_id: str, now: datetime) -> Collateral:
        """Release a holding whose loan has been closed, settled or foreclosed"""
        with self._locked((self.collaterals_table, collateral_id)):
            collateral = self.get_collateral(collateral_id)
            loan_id = collateral.loan_id
            loan_status = self.get_loan(loan_id).status.value if loan_id else None
            col_ops.release_collateral(collateral, loan_status, now)

            with self.storage.atomic():
                self._save(self.collaterals_table, collateral)
                self._audit(AuditEventType.COLLATERAL_RELEASED, "collateral", collateral.id, {
                    'loan_id': loan_id,
                }, now)

        log_action(logger, "info", "Collateral released", action="release_collateral",
                   resource=f"collateral/{collateral_id}")
        return collateral

    def liquidate_collateral(self, collateral_id: str, now: datetime) -> Collateral:
        """Invoke the lien on a holding with an open margin call"""
        with self._locked((self.collaterals_table, collateral_id)):
            collateral = self.get_collateral(collateral_id)
            col_ops.invoke_lien(collateral, now)

            loan = None
            if collateral.loan_id:
                with self._locked((self.loans_table, collateral.loan_id)):
                    loan = self.get_loan(collateral.loan_id)
                    if loan.margin_call_status == MarginCallStatus.TRIGGERED:
                        loan_ops.mark_liquidated(loan)
                        loan.updated_at = now
                    else:
                        loan = None
                    self._persist_liquidation(collateral, loan, now)
            else:
                self._persist_liquidation(collateral, None, now)

        log_action(logger, "warning", "Collateral liquidated", action="invoke_lien",
                   resource=f"collateral/{collateral_id}")
        return collateral

    def _persist_liquidation(self, collateral: Collateral, loan: Optional[Loan], now: datetime) -> None:
        with self.storage.atomic():
            self._save(self.collaterals_table, collateral)
            if loan is not None:
                self._save(self.loans_table, loan)
            self._audit(AuditEventType.LIEN_INVOKED, "collateral", collateral.id, {
                'loan_id': collateral.loan_id,
                'current_value': collateral.current_value,
            }, now)

    # Applications

    def create_application(
        self,
        customer_id: str,
        product_id: str,
        requested_amount: Numeric,
        requested_tenure_months: int,
        collateral_ids: List[str],
        now: datetime,
        purpose: Optional[str] = None
    ) -> LoanApplication:
        product = self.get_product(product_id)
        keys = [(self.collaterals_table, cid) for cid in collateral_ids]
        with self._locked(*keys):
            collaterals = [self.get_collateral(cid) for cid in collateral_ids]
            application = app_ops.create_application(
                application_id=self.application_ids.next(),
                customer_id=customer_id,
                product=product,
                requested_amount=requested_amount,
                requested_tenure_months=requested_tenure_months,
                collaterals=collaterals,
                now=now,
                purpose=purpose,
                expiry_days=self.config.application_expiry_days
            )

            with self.storage.atomic():
                self._save(self.applications_table, application)
                for collateral in collaterals:
                    self._save(self.collaterals_table, collateral)
                self._audit(AuditEventType.APPLICATION_CREATED, "application", application.id, {
                    'customer_id': customer_id,
                    'product_id': product_id,
                    'requested_amount': application.requested_amount,
                    'eligible_loan_amount': application.eligible_loan_amount,
                    'collateral_ids': application.collateral_ids,
                }, now)

        log_action(logger, "info",
                   f"Application created for {format_inr(application.requested_amount)}",
                   action="create_application", resource=f"application/{application.id}")
        return application

    def add_collateral(self, application_id: str, collateral_id: str, now: datetime) -> LoanApplication:
        with self._locked((self.applications_table, application_id)):
            application = self.get_application(application_id)
            keys = [(self.collaterals_table, cid) for cid in application.collateral_ids + [collateral_id]]
            with self._locked(*keys):
                existing = [self.get_collateral(cid) for cid in application.collateral_ids]
                collateral = self.get_collateral(collateral_id)
                app_ops.add_collateral(
                    application, collateral, existing, self.get_product(application.loan_product_id), now
                )

                with self.storage.atomic():
                    self._save(self.applications_table, application)
                    self._save(self.collaterals_table, collateral)
                    self._audit(AuditEventType.APPLICATION_COLLATERAL_ADDED, "application", application.id, {
                        'collateral_id': collateral_id,
                        'eligible_loan_amount': application.eligible_loan_amount,
                    }, now)
        return application

    def _change_application(self, application: LoanApplication, previous: ApplicationStatus,
                            now: datetime, remarks: Optional[str] = None) -> None:
        self._audit(AuditEventType.APPLICATION_STATUS_CHANGED, "application", application.id, {
            'from_status': previous,
            'to_status': application.status,
            'remarks': remarks,
        }, now)

    def update_application_status(
        self,
        application_id: str,
        new_status: Union[ApplicationStatus, str],
        now: datetime,
        remarks: Optional[str] = None
    ) -> LoanApplication:
        """Move an application through submission and review"""
        new_status = ApplicationStatus(new_status)
        with self._locked((self.applications_table, application_id)):
            application = self.get_application(application_id)
            previous = application.status
            app_ops.update_status(application, new_status, now, remarks)

            with self.storage.atomic():
                self._save(self.applications_table, application)
                self._change_application(application, previous, now, remarks)

        log_action(logger, "info", f"Application moved to {new_status.value}",
                   action="update_application_status", resource=f"application/{application_id}")
        return application

    def submit_application(self, application_id: str, now: datetime,
                           remarks: Optional[str] = None) -> LoanApplication:
        return self.update_application_status(application_id, ApplicationStatus.SUBMITTED, now, remarks)

    def approve_application(
        self,
        application_id: str,
        now: datetime,
        approved_amount: Optional[Numeric] = None,
        approved_tenure_months: Optional[int] = None,
        remarks: Optional[str] = None
    ) -> LoanApplication:
        """Approve an application and mark liens on its collateral"""
        with self._locked((self.applications_table, application_id)):
            application = self.get_application(application_id)
            product = self.get_product(application.loan_product_id)
            keys = [(self.collaterals_table, cid) for cid in application.collateral_ids]
            with self._locked(*keys):
                collaterals = [self.get_collateral(cid) for cid in application.collateral_ids]
                previous = application.status
                app_ops.approve(
                    application, collaterals, product, now,
                    approved_amount=approved_amount,
                    approved_tenure_months=approved_tenure_months,
                    remarks=remarks
                )

                with self.storage.atomic():
                    self._save(self.applications_table, application)
                    for collateral in collaterals:
                        self._save(self.collaterals_table, collateral)
                        self._audit(AuditEventType.LIEN_MARKED, "collateral", collateral.id, {
                            'application_id': application.id,
                        }, now)
                    self._change_application(application, previous, now, remarks)

        log_action(logger, "info", f"Application approved for {format_inr(application.approved_amount)}",
                   action="approve_application", resource=f"application/{application_id}")
        return application

    def reject_application(self, application_id: str, reason: str, now: datetime) -> LoanApplication:
        with self._locked((self.applications_table, application_id)):
            application = self.get_application(application_id)
            previous = application.status
            app_ops.reject(application, reason, now)

            with self.storage.atomic():
                self._save(self.applications_table, application)
                self._change_application(application, previous, now, reason)

        log_action(logger, "info", "Application rejected", action="reject_application",
                   resource=f"application/{application_id}", extra={'reason': reason})
        return application

    def cancel_application(self, application_id: str, now: datetime,
                           remarks: Optional[str] = None) -> LoanApplication:
        with self._locked((self.applications_table, application_id)):
            application = self.get_application(application_id)
            previous = application.status
            app_ops.cancel(application, now, remarks)

            with self.storage.atomic():
                self._save(self.applications_table, application)
                self._change_application(application, previous, now, remarks)
        return application

    def expire_stale_applications(self, now: datetime) -> List[str]:
        """Expire every undisbursed application past its expiry date"""
        expired = []
        for candidate in self.list_applications():
            if candidate.is_terminal:
                continue
            with self._locked((self.applications_table, candidate.id)):
                application = self.get_application(candidate.id)
                previous = application.status
                if not app_ops.expire_if_stale(application, now):
                    continue
                with self.storage.atomic():
                    self._save(self.applications_table, application)
                    self._change_application(application, previous, now, "Application expired")
                expired.append(application.id)

        if expired:
            log_action(logger, "info", f"Expired {len(expired)} applications",
                       action="expire_applications", extra={'application_ids': expired})
        return expired

    def disburse(
        self,
        application_id: str,
        disbursement_date: date,
        now: datetime,
        disbursement_account_number: Optional[str] = None,
        disbursement_ifsc: Optional[str] = None,
        disbursement_reference_number: Optional[str] = None
    ) -> Loan:
        """
        Disburse an approved application

        The application, the new loan and every linked collateral are written
        in one transaction; if any write fails none of them is kept.
        """
        with self._locked((self.applications_table, application_id)):
            application = self.get_application(application_id)
            keys = [(self.collaterals_table, cid) for cid in application.collateral_ids]
            with self._locked(*keys):
                collaterals = [self.get_collateral(cid) for cid in application.collateral_ids]
                previous = application.status
                loan = app_ops.disburse(
                    application, collaterals,
                    loan_id=self.loan_ids.next(),
                    disbursement_date=disbursement_date,
                    now=now,
                    disbursement_account_number=disbursement_account_number,
                    disbursement_ifsc=disbursement_ifsc,
                    disbursement_reference_number=disbursement_reference_number,
                    first_emi_offset_months=self.config.first_emi_offset_months
                )

                with self.storage.atomic():
                    self._save(self.loans_table, loan)
                    for collateral in collaterals:
                        self._save(self.collaterals_table, collateral)
                    self._save(self.applications_table, application)
                    self._change_application(application, previous, now)
                    self._audit(AuditEventType.LOAN_DISBURSED, "loan", loan.id, {
                        'application_id': application.id,
                        'principal_amount': loan.principal_amount,
                        'interest_rate': loan.interest_rate,
                        'tenure_months': loan.tenure_months,
                        'emi_amount': loan.emi_amount,
                        'collateral_ids': loan.collateral_ids,
                    }, now)

        log_action(logger, "info", f"Loan disbursed for {format_inr(loan.principal_amount)}",
                   action="disburse", resource=f"loan/{loan.id}",
                   extra={'application_id': application_id, 'emi_amount': str(loan.emi_amount)})
        return loan

    # Loans

    def record_payment(
        self,
        loan_id: str,
        amount: Numeric,
        mode: Union[PaymentMode, str],
        reference_number: Optional[str],
        payment_date: date,
        now: datetime
    ) -> Payment:
        """Apply a payment to a loan's installments, oldest first"""
        with self._locked((self.loans_table, loan_id)):
            loan = self.get_loan(loan_id)
            previous = loan.status
            try:
                payment = loan_ops.record_payment(
                    loan, amount, mode, reference_number, payment_date, self._next_payment_id()
                )
            except LendingError as e:
                log_action(logger, "warning", f"Payment rejected: {e.message}",
                           action="record_payment", resource=f"loan/{loan_id}",
                           extra={'code': e.kind})
                raise
            loan.updated_at = now

            with self.storage.atomic():
                self._save(self.loans_table, loan)
                self._audit(AuditEventType.LOAN_PAYMENT_MADE, "loan", loan.id, {
                    'payment_id': payment.id,
                    'amount': payment.amount,
                    'installments_covered': payment.installments_covered,
                    'total_outstanding': loan.total_outstanding,
                }, now)
                self._audit_status_change(loan, previous, now)

        log_action(logger, "info", f"Payment of {format_inr(payment.amount)} recorded",
                   action="record_payment", resource=f"loan/{loan_id}",
                   extra={'installments_covered': list(payment.installments_covered),
                          'status': loan.status.value})
        return payment

    def prepay(
        self,
        loan_id: str,
        amount: Numeric,
        mode: Union[PaymentMode, str],
        reference_number: Optional[str],
        payment_date: date,
        now: datetime
    ) -> PrepaymentResult:
        with self._locked((self.loans_table, loan_id)):
            loan = self.get_loan(loan_id)
            product = self.get_product(loan.loan_product_id)
            previous = loan.status
            result = loan_ops.prepay(
                loan, amount, mode, reference_number, product, payment_date, self._next_payment_id()
            )
            loan.updated_at = now

            with self.storage.atomic():
                self._save(self.loans_table, loan)
                self._audit(AuditEventType.LOAN_PREPAYMENT_MADE, "loan", loan.id, {
                    'payment_id': result.payment.id,
                    'amount': result.prepayment_amount,
                    'charge': result.prepayment_charge,
                    'total_outstanding': result.new_outstanding,
                }, now)
                self._audit_status_change(loan, previous, now)

        log_action(logger, "info", f"Prepayment of {format_inr(result.prepayment_amount)} recorded",
                   action="prepay", resource=f"loan/{loan_id}",
                   extra={'charge': str(result.prepayment_charge), 'status': loan.status.value})
        return result

    def _audit_status_change(self, loan: Loan, previous: LoanStatus,
                             now: datetime) -> None:
        if loan.status == previous:
            return
        event_type = {
            LoanStatus.CLOSED: AuditEventType.LOAN_CLOSED,
            LoanStatus.FORECLOSED: AuditEventType.LOAN_FORECLOSED,
            LoanStatus.SETTLED: AuditEventType.LOAN_SETTLED,
            LoanStatus.WRITTEN_OFF: AuditEventType.LOAN_WRITTEN_OFF,
        }.get(loan.status, AuditEventType.LOAN_STATUS_CHANGED)
        self._audit(event_type, "loan", loan.id, {
            'from_status': previous,
            'to_status': loan.status,
            'days_overdue': loan.days_overdue,
        }, now)
        log_action(logger, "info", f"Loan moved from {previous.value} to {loan.status.value}",
                   action="loan_status_changed", resource=f"loan/{loan.id}")

    def run_overdue_sweep(self, today: date, now: datetime) -> Dict[str, Any]:
        """
        Sweep every open loan against today's date

        Each loan is swept and saved on its own, so a failure on one loan
        does not block the rest; failed loans are reported and can be swept
        again on retry.
        """
        summary: Dict[str, Any] = {
            'swept': 0,
            'overdue': 0,
            'npa': 0,
            'changed': [],
            'failed': [],
        }
        open_ids = [loan.id for loan in self.list_loans() if loan.is_open]

        for loan_id in open_ids:
            try:
                with self._locked((self.loans_table, loan_id)):
                    loan = self.get_loan(loan_id)
                    before = loan.to_dict()
                    previous = loan.status
                    sweep_overdue(loan, today, self.config.npa_threshold_days)
                    if loan.to_dict() != before:
                        loan.updated_at = now
                        with self.storage.atomic():
                            self._save(self.loans_table, loan)
                            self._audit_status_change(loan, previous, now)
                        summary['changed'].append(loan_id)
            except LendingError as e:
                log_action(logger, "error", f"Overdue sweep failed: {e.message}",
                           action="overdue_sweep", resource=f"loan/{loan_id}",
                           extra={'code': e.kind})
                summary['failed'].append(loan_id)
                continue

            summary['swept'] += 1
            if loan.status == LoanStatus.OVERDUE:
                summary['overdue'] += 1
            elif loan.status == LoanStatus.NPA:
                summary['npa'] += 1

        self._audit(AuditEventType.OVERDUE_SWEEP_COMPLETED, "system", "overdue_sweep", {
            'today': today,
            'swept': summary['swept'],
            'overdue': summary['overdue'],
            'npa': summary['npa'],
            'failed': summary['failed'],
        }, now)
        log_action(logger, "info", f"Overdue sweep for {today.isoformat()} completed",
                   action="overdue_sweep", extra={k: v for k, v in summary.items()})
        return summary

    def resolve_margin_call(self, loan_id: str, now: datetime, remarks: Optional[str] = None) -> Loan:
        """Clear a triggered margin call on a loan and its collateral"""
        collateral_keys = [(self.collaterals_table, cid) for cid in self.get_loan(loan_id).collateral_ids]
        with self._locked((self.loans_table, loan_id), *collateral_keys):
            loan = self.get_loan(loan_id)
            loan_ops.resolve_margin_call(loan)
            if remarks:
                loan.remarks = remarks
            loan.updated_at = now

            cleared = []
            for collateral_id in loan.collateral_ids:
                collateral = self.get_collateral(collateral_id)
                if collateral.margin_call_triggered:
                    col_ops.clear_margin_call(collateral, now)
                    cleared.append(collateral)

            with self.storage.atomic():
                self._save(self.loans_table, loan)
                for collateral in cleared:
                    self._save(self.collaterals_table, collateral)
                self._audit(AuditEventType.MARGIN_CALL_RESOLVED, "loan", loan.id, {
                    'collateral_ids': [c.id for c in cleared],
                    'remarks': remarks,
                }, now)

        log_action(logger, "info", "Margin call resolved", action="resolve_margin_call",
                   resource=f"loan/{loan_id}")
        return loan

    def settle_loan(self, loan_id: str, settlement_date: date, now: datetime,
                    remarks: Optional[str] = None) -> Loan:
        return self._close_loan(loan_id, loan_ops.settle, settlement_date, now, remarks)

    def write_off_loan(self, loan_id: str, write_off_date: date, now: datetime,
                       remarks: Optional[str] = None) -> Loan:
        return self._close_loan(loan_id, loan_ops.write_off, write_off_date, now, remarks)

    def _close_loan(self, loan_id, operation, closure_date, now, remarks) -> Loan:
        with self._locked((self.loans_table, loan_id)):
            loan = self.get_loan(loan_id)
            previous = loan.status
            operation(loan, closure_date, remarks)
            loan.updated_at = now

            with self.storage.atomic():
                self._save(self.loans_table, loan)
                self._audit_status_change(loan, previous, now)
        return loan

    # Summaries

    def get_schedule_summary(self, loan_id: str) -> Dict[str, int]:
        return loan_ops.schedule_summary(self.get_loan(loan_id))

    def get_payment_summary(self, loan_id: str) -> Dict[str, Any]:
        return loan_ops.payment_summary(self.get_loan(loan_id))

    def get_margin_call_loans(self) -> List[Loan]:
        """ACTIVE loans with a triggered margin call"""
        return [
            loan for loan in self.list_loans(LoanStatus.ACTIVE)
            if loan.margin_call_status == MarginCallStatus.TRIGGERED
        ]

    def get_portfolio_summary(self) -> Dict[str, Dict[str, Any]]:
        return loan_ops.portfolio_summary(self.list_loans())

    def get_collateral_summary(self) -> List[Dict[str, Any]]:
        return col_ops.summarize_by_fund_type(self.list_collaterals())

    def verify_audit_integrity(self) -> Dict[str, Any]:
        return self.audit_trail.verify_integrity()
