"""End-to-end runs of patient flows against the SQLite repository."""

from datetime import timedelta

import pytest

from clinicflow.engine import FlowEngine
from clinicflow.notifications import InMemoryNotificationDispatcher
from clinicflow.persistence import SQLiteExecutionRepository
from clinicflow.scheduler import DelayTaskProcessor


@pytest.fixture
def sqlite_engine(tmp_path, clock):
    repo = SQLiteExecutionRepository(tmp_path / "clinicflow.db")
    return FlowEngine(repo, clock=clock)


@pytest.mark.asyncio
async def test_question_delay_form_flow(sqlite_engine, clock, scenario_a_flow, tmp_path):
    engine = sqlite_engine
    repo = engine.repository
    dispatcher = InMemoryNotificationDispatcher(patient_names={"patient-1": "Maria"})
    processor = DelayTaskProcessor(engine, dispatcher)

    record = await engine.assign_flow(scenario_a_flow, "patient-1")
    assert record.status == "pending"

    first = await engine.complete_step(record.id, "q1", "Sim")
    assert first.progress == 25
    (task,) = await repo.list_delay_tasks(processed=False)
    assert task.trigger_at == clock() + timedelta(minutes=5)
    assert task.form_name == "Anamnese"

    clock.advance(minutes=4)
    assert (await processor.process()).found == 0
    assert await engine.current_step_for_patient(record.id) is None

    clock.advance(minutes=1)
    summary = await processor.process()
    assert summary.processed == 1
    assert summary.notified == 1
    assert len(dispatcher.sent) == 1

    # State survives a fresh repository on the same file.
    reopened = FlowEngine(SQLiteExecutionRepository(tmp_path / "clinicflow.db"), clock=clock)
    stored = await reopened.get_execution(record.id)
    assert stored.current_node == "fs1"
    assert not stored.current_step.current.completed
    assert stored.progress == 50
    assert stored.status == "in-progress"

    done = await reopened.complete_step(record.id, "fs1", {"answers": {"peso": 80}})
    assert done.form_end_processed is True
    assert done.status == "completed"
    assert done.progress == 100
    assert done.completed_steps == done.total_steps == 4

    final = await reopened.get_execution(record.id)
    form_end_step = final.current_step.steps[-1]
    assert form_end_step.node_type == "formEnd"
    assert form_end_step.response["message"] == "Obrigado!"
    assert form_end_step.response["files"] == 1

    (access,) = await repo.list_content_access(execution_id=record.id)
    assert access.files[0]["nome"] == "dieta.pdf"
    assert access.patient_id == "patient-1"
    assert access.node_id == "fe1"
    assert access.expires_at == clock() + timedelta(days=30)
    assert access.id == form_end_step.response["contentAccessId"]


@pytest.mark.asyncio
async def test_form_end_runs_without_patient_action(sqlite_engine, flow_factory):
    flow = flow_factory(
        [
            ("s", "start", {}),
            ("fs", "formStart", {"formName": "Retorno"}),
            ("q", "question", {"nomenclatura": "sintomas"}),
            ("fe", "formEnd", {"mensagemFinal": "Até a próxima consulta"}),
            ("e", "end", {}),
        ],
        [("s", "fs"), ("fs", "q"), ("q", "fe"), ("fe", "e")],
    )
    engine = sqlite_engine
    record = await engine.assign_flow(flow, "patient-2")

    await engine.complete_step(record.id, "fs")
    result = await engine.complete_step(record.id, "q", "nenhum")

    assert result.form_end_processed is True
    assert result.status == "completed"
    assert result.current_step is None
    stored = await engine.get_execution(record.id)
    assert stored.current_step.steps[-1].completed
    assert stored.current_step.steps[-1].response["message"] == "Até a próxima consulta"
    assert await engine.repository.list_content_access(execution_id=record.id) == []


@pytest.mark.asyncio
async def test_branching_flow_with_delay_on_chosen_path(sqlite_engine, clock, flow_factory):
    flow = flow_factory(
        [
            ("s", "start", {}),
            ("peso", "number", {"nomenclatura": "peso"}),
            (
                "cond",
                "conditions",
                {"conditions": [{"campo": "peso", "operador": "maior", "valor": 100}]},
            ),
            ("d", "delay", {"quantidade": 1, "tipoIntervalo": "horas"}),
            ("fs", "formStart", {"formName": "Acompanhamento"}),
            ("fim", "question", {"nomenclatura": "fim"}),
            ("e", "end", {}),
        ],
        [
            ("s", "peso"),
            ("peso", "cond"),
            ("cond", "d", "true"),
            ("cond", "fim", "false"),
            ("d", "fs"),
            ("fs", "e"),
            ("fim", "e"),
        ],
    )
    engine = sqlite_engine
    dispatcher = InMemoryNotificationDispatcher()
    processor = DelayTaskProcessor(engine, dispatcher)

    heavy = await engine.assign_flow(flow, "patient-1")
    light = await engine.assign_flow(flow, "patient-2")

    heavy_result = await engine.complete_step(heavy.id, "peso", 120)
    light_result = await engine.complete_step(light.id, "peso", 70)

    assert heavy_result.delay_task_id is not None
    assert heavy_result.current_step is None
    assert light_result.current_step.node_id == "fim"
    assert light_result.total_steps == 3

    clock.advance(hours=1)
    summary = await processor.process()
    assert summary.processed == 1
    assert dispatcher.sent[0].form_name == "Acompanhamento"
    assert (await engine.current_step_for_patient(heavy.id)).node_id == "fs"
