# tests/test_runner.py
import pytest

from protoprobe.catalog import BATCH_BASE_ID, INSERT_DELETE_ID, get_scenario
from protoprobe.report import diff
from protoprobe.runner import AUTO_COMMIT, CONNECT, IMPLICIT_BEGIN, ROLLBACK, ScenarioRunner
from protoprobe.scenario import (
    Capability,
    Execute,
    ExecuteKind,
    Prepare,
    Scenario,
    SetTransactionMode,
    Statement,
    TransactionMode,
)
from protoprobe.types import ParamType


def actions(result):
    return [observation.action for observation in result.observations]


def test_simple_select_records_one_observation_per_step(make_handle):
    """Mode none issues no transaction boundary and drains the seeded row"""
    scenario = get_scenario("simple-select")
    result = ScenarioRunner().run(scenario, make_handle())

    assert not result.aborted
    assert len(result.observations) == len(scenario.steps)
    assert IMPLICIT_BEGIN not in actions(result)
    mode = result.observations[3]
    assert mode.action == "set-transaction-mode"
    assert mode.detail == {'issued': [], 'autocommit': True}
    select = result.observations[5]
    assert select.rows == (('kidnap',),)
    assert select.row_count == 1
    assert select.columns == ('name',)


def test_observations_keep_emission_order(make_handle):
    result = ScenarioRunner().run(get_scenario("simple-select"), make_handle())
    assert [observation.index for observation in result.observations] == list(range(len(result.observations)))
    assert [observation.step for observation in result.observations] == list(range(len(result.observations)))


def test_update_renames_seeded_row(make_handle):
    result = ScenarioRunner().run(get_scenario("update-name"), make_handle())

    update = result.observations[4]
    assert update.update_count == 1
    assert result.observations[-1].rows == (('fido',),)


def test_update_with_timestamp_binds_now(make_handle):
    result = ScenarioRunner().run(get_scenario("update-name-and-timestamp"), make_handle())
    assert not result.aborted
    assert result.observations[-1].rows == (('fido',),)


def test_insert_delete_autocommit_off_observes_implicit_begin(make_handle):
    """Turning autocommit off lets the driver open a transaction on its own"""
    handle = make_handle()
    result = ScenarioRunner().run(get_scenario("insert-delete-autocommit-off"), handle)

    assert not result.aborted
    assert actions(result) == [
        "statement", "statement", "statement",
        "set-transaction-mode",
        "prepare",
        IMPLICIT_BEGIN,
        "execute",
        "prepare",
        "execute",
        "commit",
        "prepare",
        "execute",
    ]
    implicit = result.observations[5]
    assert implicit.step is None
    assert implicit.synthetic
    assert not result.observations[6].synthetic
    assert result.observations[6].step == 5
    assert result.observations[6].update_count == 1
    assert result.observations[8].update_count == 1
    assert result.observations[9].detail == {'issued': [], 'autocommit': True}
    verify = result.observations[-1]
    assert verify.rows == ()
    assert verify.row_count == 0
    assert handle.autocommit is True
    assert INSERT_DELETE_ID not in handle.dogs


def test_autocommit_off_without_driver_begin_has_no_implicit_observation(make_handle):
    result = ScenarioRunner().run(get_scenario("insert-delete-autocommit-off"), make_handle(implicit_begin=False))
    assert IMPLICIT_BEGIN not in actions(result)


def test_explicit_begin_issues_start_and_commit(make_handle):
    handle = make_handle()
    result = ScenarioRunner().run(get_scenario("insert-delete-explicit"), handle)

    assert not result.aborted
    assert IMPLICIT_BEGIN not in actions(result)
    assert result.observations[3].detail == {'issued': ['START TRANSACTION'], 'autocommit': True}
    commit = [observation for observation in result.observations if observation.action == "commit"][0]
    assert commit.detail == {'issued': ['COMMIT'], 'autocommit': True}
    assert "START TRANSACTION" in handle.executed
    assert "COMMIT" in handle.executed


def test_open_explicit_transaction_is_committed_at_scenario_end(make_handle):
    scenario = Scenario(
        name="left-open",
        steps=(
            Statement("drop table if exists dogs"),
            SetTransactionMode(TransactionMode.EXPLICIT_BEGIN),
            Prepare("insert", "insert into dogs values(?, 'rando', now())", (ParamType.INTEGER,)),
            Execute("insert", (7,), ExecuteKind.UPDATE),
        ),
    )
    handle = make_handle()
    result = ScenarioRunner().run(scenario, handle)

    last = result.observations[-1]
    assert last.action == AUTO_COMMIT
    assert last.synthetic
    assert last.detail == {'issued': ['COMMIT'], 'autocommit': True}
    assert not handle.in_transaction
    assert handle.dogs == {7: 'rando'}


def test_failed_step_aborts_and_rolls_back(make_handle):
    handle = make_handle(failures={"delete from dogs where id = ?": "execution"})
    result = ScenarioRunner().run(get_scenario("insert-delete-explicit"), handle)

    assert result.aborted
    assert not result.infrastructure_failure
    failed = result.failures[0]
    assert failed.action == "execute"
    assert failed.error_kind == "execution"
    assert "forced failure" in failed.error_message
    assert result.observations[-1].action == ROLLBACK
    assert result.observations[-1].ok
    # Nothing after the failing step ran, and the insert was rolled back
    assert result.observations[-2] is failed
    assert handle.dogs == {1: 'kidnap'}


def test_timeout_is_an_infrastructure_failure(make_handle):
    handle = make_handle(failures={"select name from dogs where id = ?": "timeout"})
    result = ScenarioRunner().run(get_scenario("no-data-read"), handle)

    assert result.aborted
    assert result.infrastructure_failure
    assert result.failures[0].error_kind == "timeout"


def test_isolation_level_is_recorded_with_the_result(make_handle):
    result = ScenarioRunner().run(get_scenario("simple-select"), make_handle())

    assert result.isolation_level == "read committed"
    assert result.to_dict()['isolation_level'] == "read committed"
    assert len(result.observations) == len(get_scenario("simple-select").steps)


def test_unreadable_isolation_level_does_not_abort(make_handle):
    handle = make_handle(failures={"show transaction_isolation": "execution"})
    result = ScenarioRunner().run(get_scenario("simple-select"), handle)

    assert result.isolation_level is None
    assert not result.aborted


def test_rejected_statement_is_a_prepare_error(make_handle):
    result = ScenarioRunner().run(get_scenario("foreign-key-lookup"), make_handle())

    assert result.aborted
    assert result.failures[0].error_kind == "prepare"
    assert not result.infrastructure_failure


def test_no_data_read_returns_empty_result(make_handle):
    result = ScenarioRunner().run(get_scenario("no-data-read"), make_handle())
    assert result.observations[-1].rows == ()
    assert result.observations[-1].row_count == 0


def test_batched_inserts_report_per_row_counts(make_handle):
    result = ScenarioRunner().run(get_scenario("batched-inserts"), make_handle())

    assert not result.aborted
    flush = [observation for observation in result.observations if observation.action == "flush-batch"][0]
    assert flush.batch_counts == (1, 1, 1, 1)
    assert flush.update_count == 4
    queued = [observation.detail['queued'] for observation in result.observations
              if observation.action == "execute" and 'queued' in observation.detail]
    assert queued == [1, 2, 3, 4]
    assert result.observations[-1].rows == tuple(
        (BATCH_BASE_ID + i, f"t_{BATCH_BASE_ID + i}") for i in range(4))


def test_prepared_statement_lifecycle_listing(make_handle):
    result = ScenarioRunner().run(get_scenario("prepared-statement-lifecycle"), make_handle())

    assert not result.aborted
    listings = [observation for observation in result.observations
                if observation.action == "inspect-prepared-statements"]
    assert [listing.row_count for listing in listings] == [2, 1, 0]
    assert listings[1].listing == (('S_1', 'select id, name from dogs where id = ?'),)
    assert listings[2].listing == ()
    deallocations = [observation for observation in result.observations if observation.action == "deallocate"]
    assert deallocations[0].detail['case_sensitive'] is False


def test_missing_capability_skips_run(make_handle):
    result = ScenarioRunner().run(get_scenario("prepared-statement-lifecycle"), make_handle(capabilities=()))

    assert result.skipped is not None
    assert "introspection:prepared-statements" in result.skipped
    assert result.observations == ()
    assert not result.aborted


def test_reuse_runs_without_introspection(make_handle):
    handle = make_handle(capabilities={Capability.SERVER_PREPARED_STATEMENTS})
    result = ScenarioRunner().run(get_scenario("prepared-statement-reuse"), handle)

    assert result.skipped is None
    assert not result.aborted
    assert actions(result).count("execute") == 201
    assert result.observations[-2].rows == ((1, 'kidnap'),)
    assert handle.server_statements == {}


def test_runs_are_deterministic(make_handle):
    runner = ScenarioRunner()
    for name in ("simple-select", "insert-delete-autocommit-off", "batched-inserts"):
        scenario = get_scenario(name)
        assert diff(runner.run(scenario, make_handle()), runner.run(scenario, make_handle())) == []


def test_run_target_closes_handle(fake_target, fake_connector):
    connector = fake_connector()
    result = ScenarioRunner(connector=connector).run_target(get_scenario("simple-select"), fake_target)

    assert result.target == "fake"
    assert result.server_version == "fake-1.0"
    assert connector.opened[0].closed


def test_run_target_records_connect_failure(fake_target, fake_connector):
    connector = fake_connector(default={'failures': {'<connect>': 'connection'}})
    result = ScenarioRunner(connector=connector).run_target(get_scenario("simple-select"), fake_target)

    assert result.aborted
    assert result.infrastructure_failure
    assert len(result.observations) == 1
    assert result.observations[0].action == CONNECT
    assert result.observations[0].error_kind == "connection"


@pytest.mark.parametrize("name", ["simple-select", "table-aliasing", "update-name"])
def test_handle_is_left_in_autocommit(make_handle, name):
    handle = make_handle()
    ScenarioRunner().run(get_scenario(name), handle)
    assert handle.autocommit is True
    assert not handle.in_transaction
