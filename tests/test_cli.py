"""
Tests for the CLI interface.
"""
import asyncio
import os
import tempfile
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import yaml
from typer.testing import CliRunner

from metered_usage.cli.main import app, CliState, EXIT_CODE_PASS, EXIT_CODE_FAIL, TOKEN_ENVVAR, _fetch_stats
from metered_usage.config.loader import UsageSettings
from metered_usage.core.aggregator import UsageSnapshot
from metered_usage.core.classifier import UNKNOWN_MODEL, UsageLineItem
from metered_usage.core.errors import AuthError
from metered_usage.core.month_builder import MonthUsage
from metered_usage.core.resolver import PremiumQuota
from metered_usage.core.unknown_models import UnknownModelTracker
from metered_usage.sdk.dashboard_client import UsageBasedStatus

runner = CliRunner()


def _snapshot(current_items=(), last_items=()):
    return UsageSnapshot(
        current_month=MonthUsage(month=6, year=2025, items=tuple(current_items)),
        last_month=MonthUsage(month=5, year=2025, items=tuple(last_items)),
        premium_quota=PremiumQuota(current_count=120, limit=500, period_start="2025-06-01"),
    )


ITEMS = (
    UsageLineItem(
        display_calculation="10 req @ $0.040",
        total_dollars="$0.40",
        raw_description="10 gpt-4 requests",
        model_name="gpt-4",
        request_count=10,
        cost_per_request=Decimal("0.040"),
    ),
    UsageLineItem(
        display_calculation="4 req @ $0.020",
        total_dollars="$0.08",
        raw_description="4 discounted zephyr requests",
        is_discounted=True,
        request_count=4,
        cost_per_request=Decimal("0.020"),
    ),
)


@pytest.fixture(autouse=True)
def no_logging_setup():
    """Keep the runner's captured stdout out of the root logger."""
    with patch('metered_usage.cli.main.setup_logging'):
        yield


@pytest.fixture
def mock_fetch_stats():
    """Mock the refresh behind the stats command."""
    with patch('metered_usage.cli.main._fetch_stats', new_callable=AsyncMock) as mock:
        yield mock


@pytest.fixture
def mock_dashboard():
    """Mock the dashboard client factory."""
    with patch('metered_usage.cli.main._dashboard') as factory:
        client = MagicMock()
        factory.return_value = client
        yield client


class TestStatsCommand:
    """Test the stats command."""

    def test_stats_displays_snapshot(self, mock_fetch_stats):
        mock_fetch_stats.return_value = (_snapshot(current_items=ITEMS), ["$0.40", "$0.08"], None)

        result = runner.invoke(app, ["stats", "--token", "abc"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Premium Requests" in result.stdout
        assert "120/500 (24%)" in result.stdout
        assert "06/2025" in result.stdout
        assert "gpt-4" in result.stdout
        assert "unknown model (discounted)" in result.stdout
        assert UNKNOWN_MODEL not in result.stdout

    def test_stats_fallback_month(self, mock_fetch_stats):
        mock_fetch_stats.return_value = (_snapshot(last_items=ITEMS[:1]), ["$0.40"], None)
        result = runner.invoke(app, ["stats", "--token", "abc"])
        assert result.exit_code == EXIT_CODE_PASS
        assert "05/2025" in result.stdout
        assert "previous month" in result.stdout

    def test_stats_no_charges(self, mock_fetch_stats):
        mock_fetch_stats.return_value = (_snapshot(), [], None)
        result = runner.invoke(app, ["stats", "--token", "abc"])
        assert result.exit_code == EXIT_CODE_PASS
        assert "No usage-based charges" in result.stdout

    def test_stats_reports_new_models(self, mock_fetch_stats):
        mock_fetch_stats.return_value = (_snapshot(current_items=ITEMS), ["$0.40", "$0.08"], ["zephyr"])
        result = runner.invoke(app, ["stats", "--token", "abc"])
        assert "New models detected:" in result.stdout
        assert "zephyr" in result.stdout

    def test_stats_token_from_environment(self, mock_fetch_stats):
        mock_fetch_stats.return_value = (_snapshot(), [], None)
        result = runner.invoke(app, ["stats"], env={TOKEN_ENVVAR: "from-env"})
        assert result.exit_code == EXIT_CODE_PASS
        assert mock_fetch_stats.await_args.args[1] == "from-env"

    def test_stats_requires_token(self, mock_fetch_stats):
        result = runner.invoke(app, ["stats"], env={TOKEN_ENVVAR: ""})
        assert result.exit_code == EXIT_CODE_FAIL
        assert "no session token" in result.stdout
        mock_fetch_stats.assert_not_called()

    def test_stats_refresh_error(self, mock_fetch_stats):
        mock_fetch_stats.side_effect = AuthError("Credential rejected", status_code=401)
        result = runner.invoke(app, ["stats", "--token", "abc"])
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Credential rejected" in result.stdout

    def test_stats_currency_option(self, mock_fetch_stats):
        mock_fetch_stats.return_value = (_snapshot(), [], None)
        runner.invoke(app, ["stats", "--token", "abc", "--currency", "eur"])
        assert mock_fetch_stats.await_args.args[2] == "EUR"

    def test_stats_tracker_comes_from_context(self, mock_fetch_stats):
        """The unknown model tracker lives on the context object, not the module."""
        mock_fetch_stats.return_value = (_snapshot(), [], None)
        state = CliState()

        runner.invoke(app, ["stats", "--token", "abc"], obj=state)
        first = mock_fetch_stats.await_args.args[3]
        runner.invoke(app, ["stats", "--token", "abc"], obj=state)

        assert isinstance(first, UnknownModelTracker)
        assert first is state.tracker
        assert mock_fetch_stats.await_args.args[3] is first

    def test_stats_fresh_context_gets_fresh_tracker(self, mock_fetch_stats):
        mock_fetch_stats.return_value = (_snapshot(), [], None)
        runner.invoke(app, ["stats", "--token", "abc"])
        first = mock_fetch_stats.await_args.args[3]
        runner.invoke(app, ["stats", "--token", "abc"])
        assert mock_fetch_stats.await_args.args[3] is not first


class TestFetchStats:
    """The refresh behind the stats command."""

    def test_rates_are_looked_up_once(self):
        snapshot = _snapshot(current_items=ITEMS)
        with patch('metered_usage.cli.main._dashboard'), \
                patch('metered_usage.cli.main.UsageResolver'), \
                patch('metered_usage.cli.main.UsageAggregator') as aggregator, \
                patch('metered_usage.cli.main._converter') as converter:
            aggregator.return_value.refresh = AsyncMock(return_value=snapshot)
            converter.return_value.format_all = AsyncMock(return_value=["€0.36", "€0.07"])

            _, totals, unknown = asyncio.run(
                _fetch_stats(UsageSettings(), "tok", "EUR", UnknownModelTracker())
            )

        assert totals == ["€0.36", "€0.07"]
        assert unknown is None
        converter.return_value.format_all.assert_awaited_once_with([Decimal("0.40"), Decimal("0.08")], "EUR")


class TestConvertCommand:
    """Test the convert command."""

    def test_convert(self):
        with patch('metered_usage.cli.main._converter') as factory:
            factory.return_value.convert_and_format = AsyncMock(return_value="€9.00")
            result = runner.invoke(app, ["convert", "10", "--currency", "eur"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "€9.00" in result.stdout
        amount, currency = factory.return_value.convert_and_format.await_args.args
        assert amount == Decimal("10.0")
        assert currency == "EUR"


class TestLimitCommands:
    """Test the limit and set-limit commands."""

    def test_limit_enabled(self, mock_dashboard, session_token):
        mock_dashboard.check_usage_based_status = AsyncMock(
            return_value=UsageBasedStatus(is_enabled=True, limit=50)
        )
        result = runner.invoke(app, ["limit", "--token", session_token])
        assert result.exit_code == EXIT_CODE_PASS
        assert "enabled ($50.00)" in result.stdout

    def test_limit_disabled(self, mock_dashboard, session_token):
        mock_dashboard.check_usage_based_status = AsyncMock(return_value=UsageBasedStatus(is_enabled=False))
        result = runner.invoke(app, ["limit", "--token", session_token])
        assert result.exit_code == EXIT_CODE_PASS
        assert "disabled" in result.stdout

    def test_limit_bad_token(self, mock_dashboard):
        result = runner.invoke(app, ["limit", "--token", "not-a-session-token"])
        assert result.exit_code == EXIT_CODE_FAIL

    def test_set_limit(self, mock_dashboard, session_token):
        mock_dashboard.set_usage_limit = AsyncMock(return_value=None)
        result = runner.invoke(app, ["set-limit", "25", "--token", session_token])

        assert result.exit_code == EXIT_CODE_PASS
        assert "enabled with limit $25.00" in result.stdout
        _, hard_limit, disable = mock_dashboard.set_usage_limit.await_args.args
        assert hard_limit == 25.0
        assert disable is False

    def test_set_limit_disable(self, mock_dashboard, session_token):
        mock_dashboard.set_usage_limit = AsyncMock(return_value=None)
        result = runner.invoke(app, ["set-limit", "0", "--disable", "--token", session_token])
        assert result.exit_code == EXIT_CODE_PASS
        assert "disabled" in result.stdout

    def test_set_limit_rejects_negative(self, mock_dashboard, session_token):
        mock_dashboard.set_usage_limit = AsyncMock(return_value=None)
        result = runner.invoke(app, ["set-limit", "--token", session_token, "--", "-5"])
        assert result.exit_code == EXIT_CODE_FAIL
        mock_dashboard.set_usage_limit.assert_not_called()


class TestInitCommand:
    """Test the init command."""

    def test_init_creates_database(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "cache.db")
            config_path = os.path.join(temp_dir, "settings.yaml")
            with open(config_path, 'w', encoding='utf-8') as f:
                yaml.dump({"storage": {"db_path": db_path}}, f)

            result = runner.invoke(app, ["init", "--config", config_path])

            assert result.exit_code == EXIT_CODE_PASS
            assert os.path.exists(db_path)

    def test_init_invalid_config(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = os.path.join(temp_dir, "settings.yaml")
            with open(config_path, 'w', encoding='utf-8') as f:
                yaml.dump({"nope": {}}, f)
            result = runner.invoke(app, ["init", "--config", config_path])
            assert result.exit_code == EXIT_CODE_FAIL
            assert "Unknown configuration keys" in result.stdout
