import asyncio
import os
from concurrent.futures import ThreadPoolExecutor

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("VECTOR_BACKEND", "sql_fallback")

from core.services.memory_stores import MemoryItem, SearchOptions
from conftest import TENANT_ID, USER_ID


def test_memory_store_concurrency(lexical_store):
    def store_note(text: str) -> list[str]:
        return lexical_store.upsert(TENANT_ID, USER_ID, [MemoryItem(kind="note", text=text)])

    texts = ["Concurrent observation 1", "Concurrent observation 2"]
    with ThreadPoolExecutor(max_workers=2) as executor:
        results = list(executor.map(store_note, texts))

    assert all(len(ids) == 1 for ids in results)

    hits = lexical_store.search(
        TENANT_ID,
        USER_ID,
        None,
        SearchOptions(top_k=10, query_text="Concurrent observation"),
    )
    assert len(hits) >= 2


def test_concurrent_turns_keep_separate_transcripts(pipeline, mock_provider):
    from core.services.memory_tools import build_memory_capabilities
    from core.services.orchestrator import Orchestrator
    from core.services.tool_registry import CapabilityRegistry

    registry = CapabilityRegistry(build_memory_capabilities(pipeline))
    orchestrator = Orchestrator(registry, mock_provider, pipeline)

    async def run_all():
        return await asyncio.gather(
            *[
                orchestrator.process_turn(TENANT_ID, f"user-{index}", f"Remember that item {index} is ready")
                for index in range(4)
            ]
        )

    results = asyncio.run(run_all())
    assert all(result.metadata["type"] == "tool_assisted" for result in results)
    stored_texts = {result.metadata["tool_results"][0]["result"]["text"] for result in results}
    assert stored_texts == {f"Remember that item {index} is ready" for index in range(4)}
