from alerts import AlertSeverity, AlertType, evaluate_allocation, should_alert


def _evaluate(spent_cents: int, allocated_cents: int = 10_000, threshold: float = 0.8):
    return evaluate_allocation(
        allocation_id=1,
        category_id=7,
        category_name="Food",
        allocated_cents=allocated_cents,
        spent_cents=spent_cents,
        alert_threshold=threshold,
    )


def test_no_alert_below_threshold() -> None:
    assert _evaluate(7_999) is None


def test_threshold_alert_is_a_warning() -> None:
    alert = _evaluate(8_000)
    assert alert.alert_type == AlertType.threshold
    assert alert.severity == AlertSeverity.warning
    assert alert.progress_percent == 80.0
    assert alert.category_name == "Food"


def test_near_limit_is_danger() -> None:
    alert = _evaluate(9_500)
    assert alert.alert_type == AlertType.near_limit
    assert alert.severity == AlertSeverity.danger


def test_over_budget_wins() -> None:
    alert = _evaluate(10_500)
    assert alert.alert_type == AlertType.over_budget
    assert alert.severity == AlertSeverity.danger
    assert alert.spent_cents == 10_500


def test_near_limit_needs_the_threshold_to_be_crossed() -> None:
    assert _evaluate(9_500, threshold=0.99) is None


def test_zero_allocation_never_alerts_unless_spent() -> None:
    assert should_alert(0, 0, 0.8) is False
    assert _evaluate(0, allocated_cents=0) is None
    assert _evaluate(1, allocated_cents=0).alert_type == AlertType.over_budget
