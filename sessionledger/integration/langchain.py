# sessionledger/integration/langchain.py
from typing import Any, Dict, Optional
from uuid import UUID

from langchain_core.callbacks import BaseCallbackHandler

from sessionledger.integration.recorder import SessionRecorder


class LedgerCallbackHandler(BaseCallbackHandler):
    """LangChain / LangGraph callback that records an agent run as one session.

    The outermost chain run opens the session and closes it (sealed) when it
    ends; every LLM completion counts as a heartbeat and every tool call as a
    milestone.
    """

    def __init__(self, recorder: SessionRecorder, task_type: str = "coding", title: Optional[str] = None):
        self.recorder = recorder
        self.task_type = task_type
        self.title = title
        self._root_run: Optional[UUID] = None

    def on_chain_start(self, serialized: Dict[str, Any], inputs: Dict[str, Any], **kwargs):
        if self._root_run is not None or kwargs.get("parent_run_id") is not None:
            return
        self._root_run = kwargs.get("run_id")
        name = (serialized or {}).get("name") or kwargs.get("name")
        self.recorder.start(task_type=self.task_type, title=self.title, chain=name)

    def on_chain_end(self, outputs: Any, **kwargs):
        if self._root_run is not None and kwargs.get("run_id") == self._root_run:
            self._root_run = None
            self.recorder.end(self.title)

    def on_chain_error(self, error: BaseException, **kwargs):
        if self._root_run is not None and kwargs.get("run_id") == self._root_run:
            self.recorder.milestone(event="chain_error", error=type(error).__name__)
            self._root_run = None
            self.recorder.end(self.title)

    def on_llm_end(self, response: Any, **kwargs):
        if self._root_run is not None:
            self.recorder.heartbeat(source="llm")

    def on_tool_end(self, output: Any, **kwargs):
        if self._root_run is not None:
            self.recorder.milestone(event="tool_end", tool=kwargs.get("name") or "tool")
