import json

import pytest
from typer.testing import CliRunner

import clinicflow.persistence as persistence
from clinicflow.cli import app
from clinicflow.notifications import InMemoryNotificationDispatcher
from clinicflow.persistence import InMemoryExecutionRepository


@pytest.fixture
def cli_repo() -> InMemoryExecutionRepository:
    repo = InMemoryExecutionRepository()
    persistence._repository_instance = repo
    return repo


@pytest.fixture
def flow_file(tmp_path, scenario_a_flow):
    path = tmp_path / "anamnese.json"
    path.write_text(json.dumps(scenario_a_flow.model_dump(mode="json", by_alias=True)))
    return path


def _assign(runner: CliRunner, flow_file, patient_id: str = "patient-1") -> str:
    result = runner.invoke(app, ["execution", "assign", str(flow_file), patient_id])
    assert result.exit_code == 0, f"Assign failed: {result.stdout}"
    first_line = result.stdout.splitlines()[0]
    assert first_line.startswith("Execution created: ")
    return first_line.split(": ", 1)[1].strip()


def test_flow_linearize_lists_branches(tmp_path, branch_flow):
    path = tmp_path / "triagem.json"
    data = branch_flow.model_dump(mode="json", by_alias=True)
    data["nome"] = data.pop("name")
    path.write_text(json.dumps(data))

    result = CliRunner().invoke(app, ["flow", "linearize", str(path)])

    assert result.exit_code == 0, f"Command failed. Output: {result.stdout}"
    assert "3 steps" in result.stdout
    assert "-> Adulto" in result.stdout
    assert "Pergunta menor (qm)" in result.stdout


def test_flow_linearize_rejects_bad_file(tmp_path):
    path = tmp_path / "broken.json"
    path.write_text("{not json")

    result = CliRunner().invoke(app, ["flow", "linearize", str(path)])

    assert result.exit_code == 1
    assert "Cannot read flow file" in result.stdout


def test_execution_lifecycle_commands(cli_repo, flow_file):
    runner = CliRunner()
    execution_id = _assign(runner, flow_file)

    listed = runner.invoke(app, ["execution", "list", "--patient", "patient-1"])
    assert execution_id in listed.stdout
    assert "pending" in listed.stdout

    completed = runner.invoke(
        app, ["execution", "complete", execution_id, "q1", "--response", '"Sim"']
    )
    assert completed.exit_code == 0, f"Complete failed: {completed.stdout}"
    assert "in-progress 25% (1/4)" in completed.stdout
    assert "Next step available at" in completed.stdout

    repeated = runner.invoke(app, ["execution", "complete", execution_id, "q1"])
    assert "Nothing to do" in repeated.stdout

    wrong = runner.invoke(app, ["execution", "complete", execution_id, "fs1"])
    assert wrong.exit_code == 1
    assert "not the current step" in wrong.stdout

    shown = runner.invoke(app, ["execution", "show", execution_id])
    assert shown.exit_code == 0
    assert "Current step: Espera (d1)" in shown.stdout
    assert "[x] question" in shown.stdout

    paused = runner.invoke(app, ["execution", "pause", execution_id])
    assert "paused" in paused.stdout
    resumed = runner.invoke(app, ["execution", "resume", execution_id])
    assert "in-progress" in resumed.stdout
    failed = runner.invoke(app, ["execution", "fail", execution_id])
    assert "failed" in failed.stdout
    again = runner.invoke(app, ["execution", "resume", execution_id])
    assert again.exit_code == 1


def test_execution_show_missing(cli_repo):
    result = CliRunner().invoke(app, ["execution", "show", "missing-id"])
    assert result.exit_code == 1
    assert "Execution not found" in result.stdout


def test_invalid_response_json(cli_repo, flow_file):
    runner = CliRunner()
    execution_id = _assign(runner, flow_file)

    result = runner.invoke(
        app, ["execution", "complete", execution_id, "q1", "--response", "{oops"]
    )

    assert result.exit_code == 1
    assert "Invalid --response JSON" in result.stdout


def test_delay_commands(cli_repo, flow_file):
    runner = CliRunner()
    execution_id = _assign(runner, flow_file)
    runner.invoke(app, ["execution", "complete", execution_id, "q1", "--response", '"Sim"'])

    status = runner.invoke(app, ["delay", "status"])
    assert status.exit_code == 0
    assert "Pending: 1 (due now: 0)" in status.stdout

    not_due = runner.invoke(app, ["delay", "process"])
    assert not_due.exit_code == 0
    assert "found=0" in not_due.stdout

    processed = runner.invoke(
        app, ["delay", "process", "--forced", "--execution-id", execution_id]
    )
    assert processed.exit_code == 0, f"Process failed: {processed.stdout}"
    assert "processed=1" in processed.stdout
    assert "notified=1" in processed.stdout

    shown = runner.invoke(app, ["execution", "show", execution_id])
    assert "Current step: Anamnese (fs1)" in shown.stdout

    created = runner.invoke(app, ["delay", "create-test", execution_id, "--minutes", "2"])
    assert created.exit_code == 0
    assert "Delay task created" in created.stdout
    status = runner.invoke(app, ["delay", "status"])
    assert "Pending: 1" in status.stdout
    assert "Recently processed: 1" in status.stdout


def test_scheduler_run_with_lifespan(cli_repo):
    result = CliRunner().invoke(
        app, ["scheduler", "run", "--interval", "0.01", "--lifespan", "0.03"]
    )
    assert result.exit_code == 0, f"Scheduler failed: {result.stdout}"
    assert "Stopped after" in result.stdout


class TrackingDispatcher(InMemoryNotificationDispatcher):
    def __init__(self) -> None:
        super().__init__()
        self.connected = 0
        self.disconnected = 0

    async def connect(self) -> None:
        self.connected += 1

    async def disconnect(self) -> None:
        self.disconnected += 1


def test_delay_process_disconnects_dispatcher(cli_repo, flow_file, monkeypatch):
    tracker = TrackingDispatcher()
    monkeypatch.setattr("clinicflow.cli.get_dispatcher", lambda config=None: tracker)
    runner = CliRunner()
    execution_id = _assign(runner, flow_file)
    runner.invoke(app, ["execution", "complete", execution_id, "q1", "--response", '"Sim"'])

    result = runner.invoke(app, ["delay", "process", "--forced"])

    assert result.exit_code == 0, f"Process failed: {result.stdout}"
    assert len(tracker.sent) == 1
    assert tracker.connected == tracker.disconnected == 1
