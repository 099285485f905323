"""
CLI command tests (flask orders / flask rewards).
"""

from datetime import timedelta

from mercado.extensions import db
from mercado.models import Order, PointsBalance
from mercado.services import loyalty_service
from mercado.time_utils import utcnow

from conftest import BUYER, SELLER


def test_orders_expire(app, place):
    order_id = place(now=utcnow() - timedelta(hours=1))["order_id"]

    result = app.test_cli_runner().invoke(args=["orders", "expire"])

    assert result.exit_code == 0, result.output
    assert "PASS Cancelled 1 expired orders." in result.output
    assert db.session.get(Order, order_id).status == "cancelled"


def test_orders_expire_rejects_bad_limit(app, db_session):
    result = app.test_cli_runner().invoke(args=["orders", "expire", "--limit", "0"])
    assert result.exit_code != 0


def test_orders_show(app, place):
    order_id = place()["order_id"]

    result = app.test_cli_runner().invoke(args=["orders", "show", str(order_id)])

    assert result.exit_code == 0, result.output
    assert f'"id": {order_id}' in result.output
    assert '"redemption": null' in result.output


def test_orders_show_missing(app, db_session):
    result = app.test_cli_runner().invoke(args=["orders", "show", "9999"])
    assert result.exit_code == 1
    assert "FAIL" in result.output


def test_rewards_configure_and_tier(app, db_session):
    runner = app.test_cli_runner()

    result = runner.invoke(args=[
        "rewards", "configure",
        "--seller-id", SELLER,
        "--points-per-peso", "0.0286",
        "--minimum-purchase-cents", "1000",
    ])
    assert result.exit_code == 0, result.output
    assert "point value 35 cents" in result.output

    result = runner.invoke(args=[
        "rewards", "add-tier",
        "--seller-id", SELLER,
        "--name", "Plata",
        "--minimum-purchase-cents", "1000000",
        "--multiplier", "1.2",
    ])
    assert result.exit_code == 0, result.output

    config = loyalty_service.get_rewards_config(SELLER)
    assert config.is_active is True
    assert config.minimum_purchase_cents == 1000
    assert [t.tier_name for t in loyalty_service.list_tiers(SELLER)] == ["Plata"]


def test_rewards_configure_rejects_non_numeric_rate(app, db_session):
    result = app.test_cli_runner().invoke(args=[
        "rewards", "configure", "--seller-id", SELLER, "--points-per-peso", "lots",
    ])
    assert result.exit_code != 0
    assert loyalty_service.get_rewards_config(SELLER) is None


def test_rewards_audit(app, grant_points):
    grant_points(BUYER, SELLER, 30)
    runner = app.test_cli_runner()

    result = runner.invoke(args=["rewards", "audit", "--user-id", BUYER, "--seller-id", SELLER])
    assert result.exit_code == 0, result.output
    assert "PASS Balance 30 matches ledger" in result.output

    # Simulate drift between the stored balance and its ledger
    balance = db.session.query(PointsBalance).filter_by(user_id=BUYER, seller_id=SELLER).one()
    balance.points = 45
    db.session.commit()

    result = runner.invoke(args=["rewards", "audit", "--user-id", BUYER, "--seller-id", SELLER])
    assert result.exit_code == 1
    assert "FAIL Balance 45 != ledger 30" in result.output
