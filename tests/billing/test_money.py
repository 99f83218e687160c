import pytest

from domain.billing.exceptions import InvalidAmountException
from domain.billing.entity import PaymentRequest
from domain.billing.money import (
    ScholarshipTerms,
    compute_discount,
    compute_final,
    join_subjects,
    price,
    split_pricing,
)
from domain.common.exceptions import DomainValidationException


def test_twenty_percent_scholarship():
    pricing = price(1_000_000, 20)
    assert pricing.discount == 200_000
    assert pricing.final == 800_000
    assert not pricing.fully_discounted


def test_full_scholarship_is_fully_discounted():
    pricing = price(500_000, 100)
    assert pricing.discount == 500_000
    assert pricing.final == 0
    assert pricing.fully_discounted


def test_discount_rounds_down():
    # 333 * 15 / 100 = 49.95
    assert compute_discount(333, 15) == 49
    assert compute_final(333, 49) == 284


def test_final_never_negative():
    assert compute_final(100, 250) == 0


@pytest.mark.parametrize("base,percent", [(-1, 0), (100, -5), (100, 101)])
def test_rejects_out_of_range_inputs(base, percent):
    with pytest.raises(InvalidAmountException):
        compute_discount(base, percent)


def test_rejects_float_amounts():
    with pytest.raises(InvalidAmountException):
        price(100.5, 10)


def test_scholarship_terms_validate_percent():
    with pytest.raises(InvalidAmountException):
        ScholarshipTerms(percent=120)
    assert ScholarshipTerms(percent=50, type="merit").type == "merit"


def test_join_subjects_is_sorted_and_deduplicated():
    assert join_subjects(["Physics", "Math", None, " ", "Math"]) == "Math, Physics"
    assert join_subjects([]) == ""


@pytest.mark.parametrize(
    "bases,percent",
    [([3, 3], 50), ([3, 3, 5], 50), ([333, 333, 334], 15), ([1_000_000, 500_000], 20), ([7], 33), ([1, 1, 1], 100)],
)
def test_split_lines_add_up_to_single_pricing(bases, percent):
    whole = price(sum(bases), percent)
    lines = split_pricing(bases, percent)

    assert sum(p.discount for p in lines) == whole.discount
    assert sum(p.final for p in lines) == whole.final
    for base, line in zip(bases, lines):
        floor = compute_discount(base, percent)
        assert floor <= line.discount <= floor + 1
        assert line.final == base - line.discount


def test_split_gives_leftover_to_largest_remainder():
    # 10*15% = 1.5, 19*15% = 2.85 -> floors 1 + 2, total floor(4.35) = 4
    lines = split_pricing([10, 19], 15)
    assert [p.discount for p in lines] == [1, 3]


def test_line_accepts_rounded_up_discount_but_not_more():
    common = dict(id="r1", student_id="s1", class_id="c1", class_name=None, class_subject=None,
                  title="Tuition", base_amount=3, scholarship_percent=50, scholarship_type=None)
    assert PaymentRequest(discount_amount=2, final_amount=1, **common).final_amount == 1
    with pytest.raises(DomainValidationException):
        PaymentRequest(discount_amount=3, final_amount=0, **common)
