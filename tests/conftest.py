"""Shared fixtures: flow builders, a controllable clock and a fresh engine."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

import clinicflow.persistence as persistence
from clinicflow.contracts import FlowDefinition
from clinicflow.engine import FlowEngine
from clinicflow.notifications import InMemoryNotificationDispatcher
from clinicflow.persistence import InMemoryExecutionRepository
from clinicflow.scheduler import DelayTaskProcessor


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: Any) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


def build_flow(
    nodes: list[tuple[str, str, dict]],
    edges: list[tuple[str, str] | tuple[str, str, str | None, str | None]],
    flow_id: str = "flow-1",
    name: str = "Fluxo de teste",
) -> FlowDefinition:
    """Build a flow from ``(id, type, data)`` nodes and ``(source, target[, handle, label])`` edges."""

    return FlowDefinition.model_validate(
        {
            "id": flow_id,
            "name": name,
            "nodes": [{"id": i, "type": t, "data": d} for i, t, d in nodes],
            "edges": [
                {
                    "id": f"e{n}",
                    "source": e[0],
                    "target": e[1],
                    "sourceHandle": e[2] if len(e) > 2 else None,
                    "label": e[3] if len(e) > 3 else None,
                }
                for n, e in enumerate(edges, start=1)
            ],
        }
    )


@pytest.fixture
def flow_factory():
    return build_flow


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def repo() -> InMemoryExecutionRepository:
    return InMemoryExecutionRepository()


@pytest.fixture
def engine(repo, clock) -> FlowEngine:
    return FlowEngine(repo, clock=clock)


@pytest.fixture
def dispatcher() -> InMemoryNotificationDispatcher:
    return InMemoryNotificationDispatcher(patient_names={"patient-1": "Maria"})


@pytest.fixture
def processor(engine, dispatcher) -> DelayTaskProcessor:
    return DelayTaskProcessor(engine, dispatcher)


@pytest.fixture(autouse=True)
def reset_repository_singleton(monkeypatch):
    monkeypatch.delenv("CLINICFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("CLINICFLOW_NOTIFICATIONS", raising=False)
    monkeypatch.setenv("CLINICFLOW_CONFIG", "does-not-exist.yaml")
    persistence._repository_instance = None
    yield
    persistence._repository_instance = None


@pytest.fixture
def scenario_a_flow() -> FlowDefinition:
    """question -> delay(5 min) -> formStart -> formEnd."""

    return build_flow(
        [
            ("start", "start", {"label": "Início"}),
            (
                "q1",
                "question",
                {
                    "titulo": "Quer emagrecer?",
                    "nomenclatura": "quer_emagrecer",
                    "opcoes": ["Sim", "Não"],
                    "tipoResposta": "escolha-unica",
                },
            ),
            ("d1", "delay", {"label": "Espera", "quantidade": 5, "tipoIntervalo": "minutos"}),
            ("fs1", "formStart", {"titulo": "Anamnese", "formName": "Anamnese"}),
            (
                "fe1",
                "formEnd",
                {
                    "titulo": "Materiais",
                    "mensagemFinal": "Obrigado!",
                    "arquivos": [
                        {"id": "doc-1", "nome": "dieta.pdf", "url": "https://files/dieta.pdf"}
                    ],
                },
            ),
            ("end", "end", {"label": "Fim"}),
        ],
        [("start", "q1"), ("q1", "d1"), ("d1", "fs1"), ("fs1", "fe1"), ("fe1", "end")],
    )


@pytest.fixture
def branch_flow() -> FlowDefinition:
    """number(idade) -> specialConditions(adulto | default)."""

    return build_flow(
        [
            ("start", "start", {}),
            ("n1", "number", {"pergunta": "Qual sua idade?", "nomenclatura": "idade"}),
            (
                "sc",
                "specialConditions",
                {
                    "label": "Faixa etária",
                    "condicoesEspeciais": [
                        {
                            "id": "adulto",
                            "label": "Adulto",
                            "tipos": ["numerico"],
                            "tipoCondicao": "simples",
                            "campo": "idade",
                            "operador": "maior_igual",
                            "valor": 18,
                        }
                    ],
                },
            ),
            ("qa", "question", {"titulo": "Pergunta adulto", "nomenclatura": "adulto_q"}),
            ("qm", "question", {"titulo": "Pergunta menor", "nomenclatura": "menor_q"}),
            ("end", "end", {}),
        ],
        [
            ("start", "n1"),
            ("n1", "sc"),
            ("sc", "qa", "adulto", "Adulto"),
            ("sc", "qm", "default", "Outros"),
            ("qa", "end"),
            ("qm", "end"),
        ],
    )
