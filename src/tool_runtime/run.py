# run.py
# Demo entry point: settings, wiring and a scripted question list.
#
# A research-assistant session over a small physics corpus. Each question
# continues the previous transcript, so the budget trigger eventually
# condenses older turns; the console trace shows when it happens.
#
# Configure the provider with AI_MODEL / AI_ENDPOINT / AI_API_KEY (or
# OPENROUTER_API_KEY) in the environment or a .env file.

from datetime import timedelta

from tool_runtime import display
from tool_runtime.capabilities import CapabilityRegistry
from tool_runtime.config import Settings, configure_logging
from tool_runtime.middleware import ConsoleTraceMiddleware, LoggingMiddleware
from tool_runtime.model_service import OpenAIModelService
from tool_runtime.models import BudgetTrigger, FinalAnswer, Message, TriggerMode
from tool_runtime.retrieval import KeywordCorpus, retrieval_capability
from tool_runtime.supervisor import RunConfig, RunSupervisor
from tool_runtime.tools import builtin_capabilities

SYSTEM_PROMPT = (
    "You are a quantum physics research assistant. Always use the search_corpus "
    "capability to ground your explanations and cite the [source-id] you used. "
    "Keep your final responses concise."
)

KNOWLEDGE_BASE = {
    "superposition": (
        "Superposition means a quantum system can exist in multiple states simultaneously "
        "until measured. Like Schrödinger's cat being both alive and dead until observed. "
        "This principle enables qubits to represent 0 and 1 at the same time, making "
        "quantum computing powerful."
    ),
    "entanglement": (
        "Entanglement occurs when particles become correlated so measuring one instantly "
        "affects the other, regardless of distance. Einstein called it \"spooky action at a "
        "distance.\" It's essential for quantum cryptography and quantum computing algorithms."
    ),
    "tunneling": (
        "Quantum tunneling lets particles pass through barriers they classically couldn't "
        "overcome. It's why the sun shines (fusion), how electron microscopes work, and a "
        "challenge in chip design as transistors shrink."
    ),
}

QUESTIONS = [
    "What is quantum superposition?",
    "How does entanglement work?",
    "Explain quantum tunneling",
    "What are some practical applications?",
    "How do superposition and entanglement connect?",
    "What role does tunneling play in electronics?",
    "Summarize the key concepts we discussed",
]


def main() -> None:
    settings = Settings.from_env()
    configure_logging(settings.log_level)

    registry = CapabilityRegistry(builtin_capabilities())
    registry.register(retrieval_capability(KeywordCorpus(KNOWLEDGE_BASE)))

    config = RunConfig(
        registry=registry,
        middleware=[LoggingMiddleware(), ConsoleTraceMiddleware()],
        iteration_cap=settings.iteration_cap,
        timeout=timedelta(seconds=settings.timeout),
        # AND: both thresholds must be met before older turns are condensed
        budget_trigger=BudgetTrigger(tokens=200, messages=4, mode=TriggerMode.AND),
        keep_count=2,
    )
    service = OpenAIModelService(model=settings.model, base_url=settings.endpoint, api_key=settings.api_key)

    display.banner(settings.model, registry.names())
    transcript = [Message.system(SYSTEM_PROMPT)]

    with RunSupervisor(service, config) as supervisor:
        for index, question in enumerate(QUESTIONS, start=1):
            display.prompt_received(question, index, len(QUESTIONS))
            outcome = supervisor.run([*transcript, Message.user(question)])
            if isinstance(outcome, FinalAnswer):
                display.final_result(outcome)
            else:
                display.run_error(outcome)
            transcript = outcome.transcript


if __name__ == "__main__":
    main()
