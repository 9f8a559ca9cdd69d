# tests/test_matrix.py
import pytest

from protoprobe.catalog import get_scenario
from protoprobe.config import build_target
from protoprobe.matrix import (
    EXIT_DIVERGENCE,
    EXIT_INFRASTRUCTURE_FAILURE,
    EXIT_OK,
    Matrix,
)
from protoprobe.report import DivergenceKind
from protoprobe.runner import ScenarioRunner


@pytest.fixture
def targets():
    return [
        build_target("pg", {'kind': 'postgres'}),
        build_target("proxy", {'kind': 'postgres', 'port': 5433}),
        build_target("mysql", {'kind': 'mysql'}),
    ]


@pytest.fixture
def scenarios():
    return [get_scenario("simple-select"), get_scenario("batched-inserts"), get_scenario("no-data-read")]


@pytest.mark.parametrize("parallel", [False, True])
def test_results_are_ordered_by_target_then_scenario(targets, scenarios, fake_connector, parallel):
    matrix = Matrix(targets, scenarios, ScenarioRunner(connector=fake_connector()))
    result = matrix.run(parallel=parallel)

    assert [(run.target, run.scenario) for run in result.results] == [
        (target.name, scenario.name) for target in targets for scenario in scenarios
    ]
    assert result.targets == ("pg", "proxy", "mysql")
    assert not result.cancelled
    assert result.exit_code() == EXIT_OK
    assert result.exit_code(strict=True) == EXIT_OK


def test_each_run_gets_its_own_handle(targets, scenarios, fake_connector):
    connector = fake_connector()
    Matrix(targets, scenarios, ScenarioRunner(connector=connector)).run(parallel=True)

    assert len(connector.opened) == len(targets) * len(scenarios)
    assert len({id(handle) for handle in connector.opened}) == len(connector.opened)
    assert all(handle.closed for handle in connector.opened)


def test_compare_finds_divergences(targets, scenarios, fake_connector):
    connector = fake_connector(proxy={'batch_unknown': True}, mysql={'row_order': lambda rows: rows[::-1]})
    result = Matrix(targets, scenarios, ScenarioRunner(connector=connector)).run()

    # Unknown per-row counts are compatible with exact ones
    assert all(not divergences for _, _, divergences in result.compare("pg", "proxy"))

    comparisons = result.compare("pg", "mysql")
    assert [left.scenario for left, _, _ in comparisons] == [scenario.name for scenario in scenarios]
    batched = dict((left.scenario, divergences) for left, _, divergences in comparisons)["batched-inserts"]
    assert [divergence.kind for divergence in batched] == [DivergenceKind.ORDERING_MISMATCH]
    assert result.exit_code(strict=False) == EXIT_OK
    assert result.exit_code(strict=True) == EXIT_DIVERGENCE


def test_infrastructure_failure_exit_code(targets, scenarios, fake_connector):
    connector = fake_connector(mysql={'failures': {'<connect>': 'timeout'}})
    result = Matrix(targets, scenarios, ScenarioRunner(connector=connector)).run()

    assert len(result.infrastructure_failures) == len(scenarios)
    assert result.exit_code() == EXIT_INFRASTRUCTURE_FAILURE


def test_skipped_runs_are_not_diffed(targets, fake_connector):
    connector = fake_connector(mysql={'capabilities': ()})
    result = Matrix(targets, [get_scenario("prepared-statement-lifecycle")],
                    ScenarioRunner(connector=connector)).run()

    assert result.result("prepared-statement-lifecycle", "mysql").skipped
    assert result.compare("pg", "mysql")[0][2] == []
    assert result.exit_code(strict=True) == EXIT_OK


def test_cancel_stops_scheduling(targets, scenarios, fake_connector):
    connector = fake_connector()
    runner = ScenarioRunner(connector=connector)
    matrix = Matrix(targets, scenarios, runner)

    original = runner.run_target

    def run_then_cancel(scenario, target):
        result = original(scenario, target)
        matrix.cancel()
        return result

    runner.run_target = run_then_cancel
    result = matrix.run()

    assert result.cancelled
    assert [(run.target, run.scenario) for run in result.results] == [("pg", "simple-select")]


def test_compare_all_uses_first_target_as_baseline(targets, scenarios, fake_connector):
    result = Matrix(targets, scenarios, ScenarioRunner(connector=fake_connector())).run()
    pairs = {(left.target, right.target) for left, right, _ in result.compare_all()}
    assert pairs == {("pg", "proxy"), ("pg", "mysql")}
