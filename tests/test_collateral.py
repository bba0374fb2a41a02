"""
Test suite for collateral valuation and the margin monitor
"""

import pytest
from decimal import Decimal
from datetime import datetime, timezone

from lamf_ledger.collateral import (
    Collateral, CollateralStatus, FundType, LienStatus, MutualFund,
    create_collateral, revalue, apply_ltv, coverage_ratio, check_margin_call,
    mark_lien, release_collateral, invoke_lien, clear_margin_call,
    summarize_by_fund_type
)
from lamf_ledger.errors import DivisionUndefined, InvalidInput, InvalidLoanState


NOW = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)
LATER = datetime(2024, 2, 1, 10, 0, tzinfo=timezone.utc)


def make_fund(isin="INF209K01YY7", fund_type=FundType.EQUITY) -> MutualFund:
    return MutualFund(
        fund_name="Bluechip Equity Fund - Growth",
        fund_house="Example AMC",
        scheme_code="120503",
        folio_number="1234567/89",
        isin=isin,
        fund_type=fund_type
    )


def make_collateral(units="100", nav="500", ltv="50", collateral_id="COL00000001", **kwargs) -> Collateral:
    return create_collateral(
        collateral_id=collateral_id,
        customer_id="CUST1",
        mutual_fund=kwargs.pop('fund', make_fund()),
        units=units,
        nav_at_pledge=nav,
        ltv_percent=ltv,
        now=NOW,
        **kwargs
    )


class TestValuation:
    """Test pledge valuation and revaluation"""

    def test_opening_valuation(self):
        collateral = make_collateral("1000", "100", "50")
        assert collateral.value_at_pledge == Decimal('100000.00')
        assert collateral.current_value == Decimal('100000.00')
        assert collateral.eligible_loan_amount == Decimal('50000.00')
        assert collateral.lien_status == LienStatus.PENDING
        assert collateral.status == CollateralStatus.ACTIVE
        assert len(collateral.nav_history) == 1

    def test_fractional_units(self):
        collateral = make_collateral("123.456", "45.6789", "60")
        assert collateral.current_value == Decimal('5639.33')
        assert collateral.eligible_loan_amount == Decimal('3383.60')

    def test_current_nav_differs_from_pledge(self):
        collateral = make_collateral("100", "500", current_nav="450")
        assert collateral.value_at_pledge == Decimal('50000.00')
        assert collateral.current_value == Decimal('45000.00')

    def test_revalue_recomputes_value_and_eligibility_together(self):
        collateral = make_collateral("100", "500", "50")
        revalue(collateral, "420", LATER)

        assert collateral.current_nav == Decimal('420')
        assert collateral.current_value == Decimal('42000.00')
        assert collateral.eligible_loan_amount == Decimal('21000.00')
        assert collateral.value_at_pledge == Decimal('50000.00')

    def test_nav_history_is_append_only(self):
        collateral = make_collateral("100", "500")
        first = collateral.nav_history[0]
        revalue(collateral, "510", LATER)
        revalue(collateral, "505", LATER)

        assert len(collateral.nav_history) == 3
        assert collateral.nav_history[0] is first
        assert collateral.nav_history[-1].nav == Decimal('505')
        assert collateral.nav_history[-1].value == Decimal('50500.00')
        assert collateral.nav_history[-1].recorded_at == LATER

    @pytest.mark.parametrize("nav", ["0", "-10", "abc"])
    def test_revalue_rejects_bad_nav(self, nav):
        collateral = make_collateral()
        with pytest.raises(InvalidInput):
            revalue(collateral, nav, LATER)
        assert len(collateral.nav_history) == 1
        assert collateral.current_nav == Decimal('500')

    def test_create_rejects_bad_inputs(self):
        with pytest.raises(InvalidInput):
            make_collateral(units="0")
        with pytest.raises(InvalidInput):
            make_collateral(ltv="0")
        with pytest.raises(InvalidInput):
            make_collateral(ltv="120")

    def test_apply_ltv(self):
        collateral = make_collateral("100", "500", "90")
        apply_ltv(collateral, "50", LATER)
        assert collateral.ltv_percent == Decimal('50')
        assert collateral.eligible_loan_amount == Decimal('25000.00')
        assert collateral.current_value == Decimal('50000.00')
        with pytest.raises(InvalidInput):
            apply_ltv(collateral, "150", LATER)

    def test_serialization(self):
        collateral = make_collateral()
        revalue(collateral, "480", LATER)
        data = collateral.to_dict()
        assert data['mutualFund']['isin'] == "INF209K01YY7"
        assert data['mutualFund']['currentValue'] == '48000.00'
        assert data['lienStatus'] == 'PENDING'
        assert Collateral.from_dict(data) == collateral


class TestMarginCall:
    """Test the coverage check"""

    def test_falling_coverage_triggers(self):
        """Value 50,000 against 70,000 outstanding is a ratio of 0.714"""
        collateral = make_collateral("100", "500")
        assert check_margin_call(collateral, Decimal('70000'), NOW, Decimal('0.8'))
        assert collateral.margin_call_triggered
        assert collateral.margin_call_date == NOW

    def test_sufficient_coverage_does_not_trigger(self):
        collateral = make_collateral("100", "500")
        revalue(collateral, "700", LATER)
        assert coverage_ratio(collateral, Decimal('70000')) == Decimal('1')
        assert not check_margin_call(collateral, Decimal('70000'), LATER)
        assert not collateral.margin_call_triggered

    def test_check_never_clears_trigger(self):
        collateral = make_collateral("100", "500")
        check_margin_call(collateral, Decimal('70000'), NOW)
        revalue(collateral, "700", LATER)

        assert not check_margin_call(collateral, Decimal('70000'), LATER)
        assert collateral.margin_call_triggered
        assert collateral.margin_call_date == NOW

    def test_ratio_at_threshold_does_not_trigger(self):
        collateral = make_collateral("100", "560")
        assert not check_margin_call(collateral, Decimal('70000'), NOW, Decimal('0.8'))

    def test_zero_outstanding_is_undefined(self):
        collateral = make_collateral()
        with pytest.raises(DivisionUndefined):
            check_margin_call(collateral, 0, NOW)
        assert not collateral.margin_call_triggered

    def test_explicit_clear(self):
        collateral = make_collateral("100", "500")
        check_margin_call(collateral, Decimal('70000'), NOW)
        clear_margin_call(collateral, LATER)
        assert not collateral.margin_call_triggered


class TestLienLifecycle:
    """Test lien marking, release and invocation"""

    def test_mark_lien(self):
        collateral = make_collateral()
        mark_lien(collateral, NOW, "LIEN-001")
        assert collateral.lien_status == LienStatus.MARKED
        assert collateral.lien_mark_date == NOW
        assert collateral.lien_reference_number == "LIEN-001"

    def test_mark_lien_is_idempotent(self):
        collateral = make_collateral()
        mark_lien(collateral, NOW)
        mark_lien(collateral, LATER)
        assert collateral.lien_mark_date == NOW

    def test_release_unlinked(self):
        collateral = make_collateral()
        release_collateral(collateral, None, LATER)
        assert collateral.status == CollateralStatus.RELEASED
        assert collateral.lien_status == LienStatus.RELEASED

    @pytest.mark.parametrize("loan_status", ["CLOSED", "SETTLED", "FORECLOSED"])
    def test_release_after_loan_ends(self, loan_status):
        collateral = make_collateral()
        collateral.link_loan("LN1")
        release_collateral(collateral, loan_status, LATER)
        assert collateral.status == CollateralStatus.RELEASED
        assert collateral.loan_id is None

    @pytest.mark.parametrize("loan_status", ["ACTIVE", "OVERDUE", "NPA", "WRITTEN_OFF"])
    def test_release_blocked_while_loan_not_repaid(self, loan_status):
        collateral = make_collateral()
        collateral.link_loan("LN1")
        with pytest.raises(InvalidLoanState):
            release_collateral(collateral, loan_status, LATER)
        assert collateral.status == CollateralStatus.ACTIVE
        assert collateral.loan_id == "LN1"

    def test_invoke_requires_margin_call(self):
        collateral = make_collateral()
        with pytest.raises(InvalidInput):
            invoke_lien(collateral, LATER)

        check_margin_call(collateral, Decimal('70000'), NOW)
        invoke_lien(collateral, LATER)
        assert collateral.lien_status == LienStatus.INVOKED
        assert collateral.status == CollateralStatus.LIQUIDATED

    def test_links_are_set_once(self):
        collateral = make_collateral()
        collateral.link_application("LA1")
        collateral.link_application("LA1")
        with pytest.raises(InvalidInput):
            collateral.link_application("LA2")

        collateral.link_loan("LN1")
        with pytest.raises(InvalidInput):
            collateral.link_loan("LN2")


class TestFundTypeSummary:
    """Test portfolio totals per fund type"""

    def test_groups_active_collateral(self):
        equity_a = make_collateral("100", "500", collateral_id="COL1")
        equity_b = make_collateral("10", "100", collateral_id="COL2")
        debt = make_collateral("1000", "20", collateral_id="COL3", fund=make_fund("INF1", FundType.DEBT))
        released = make_collateral("1", "1", collateral_id="COL4", fund=make_fund("INF2", FundType.LIQUID))
        release_collateral(released, None, LATER)

        summary = summarize_by_fund_type([equity_a, equity_b, debt, released])
        assert [group['fundType'] for group in summary] == ['EQUITY', 'DEBT']
        assert summary[0]['count'] == 2
        assert summary[0]['totalValue'] == Decimal('51000.00')
        assert summary[1]['totalEligibleAmount'] == Decimal('10000.00')
