"""Walk a patient through a question, a delay and a form, end to end."""

import asyncio
from datetime import datetime, timedelta, timezone

from clinicflow import FlowDefinition, FlowEngine
from clinicflow.notifications import InMemoryNotificationDispatcher
from clinicflow.persistence import InMemoryExecutionRepository
from clinicflow.scheduler import DelayTaskProcessor

FLOW = {
    "id": "anamnese-emagrecimento",
    "name": "Anamnese de emagrecimento",
    "nodes": [
        {"id": "start", "type": "start", "data": {}},
        {
            "id": "q1",
            "type": "question",
            "data": {"titulo": "Quer emagrecer?", "nomenclatura": "quer_emagrecer"},
        },
        {
            "id": "d1",
            "type": "delay",
            "data": {"label": "Espera", "quantidade": 5, "tipoIntervalo": "minutos"},
        },
        {"id": "fs1", "type": "formStart", "data": {"formName": "Anamnese"}},
        {
            "id": "fe1",
            "type": "formEnd",
            "data": {
                "mensagemFinal": "Obrigado! Seu plano está disponível.",
                "arquivos": [{"nome": "plano.pdf", "url": "https://files.example.com/plano.pdf"}],
            },
        },
        {"id": "end", "type": "end", "data": {}},
    ],
    "edges": [
        {"id": "e1", "source": "start", "target": "q1"},
        {"id": "e2", "source": "q1", "target": "d1"},
        {"id": "e3", "source": "d1", "target": "fs1"},
        {"id": "e4", "source": "fs1", "target": "fe1"},
        {"id": "e5", "source": "fe1", "target": "end"},
    ],
}


class ManualClock:
    def __init__(self):
        self.now = datetime.now(timezone.utc)

    def __call__(self):
        return self.now


async def main():
    """Assign the flow, answer, let the delay pass and finish the form."""
    clock = ManualClock()
    repository = InMemoryExecutionRepository()
    engine = FlowEngine(repository, clock=clock)
    dispatcher = InMemoryNotificationDispatcher(patient_names={"patient-42": "Maria"})
    processor = DelayTaskProcessor(engine, dispatcher)

    record = await engine.assign_flow(FlowDefinition.model_validate(FLOW), "patient-42")
    print(f"📋 Execution {record.id} assigned ({record.total_steps} steps)")

    result = await engine.complete_step(record.id, "q1", "Sim")
    print(f"✅ Question answered: {result.progress}%, next step at {result.next_step_available_at}")

    summary = await processor.process()
    print(f"⏳ Before the delay: {summary.found} task(s) due")

    clock.now += timedelta(minutes=5)
    summary = await processor.process()
    print(f"🔔 After the delay: processed={summary.processed} notified={summary.notified}")
    print(dispatcher.sent[0].message)

    step = await engine.current_step_for_patient(record.id)
    result = await engine.complete_step(record.id, step.node_id, {"answers": {"peso": 82}})
    print(f"🏁 Flow {result.status}: {result.progress}%")

    for access in await repository.list_content_access(execution_id=record.id):
        print(f"🔗 Content access {access.id} until {access.expires_at.isoformat()}")


if __name__ == "__main__":
    asyncio.run(main())
