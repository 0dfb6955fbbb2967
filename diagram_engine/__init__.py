"""
Segment Diagram Engine — adaptive LLM orchestration and semantic caching.

Turns a text segment into a validated node/edge graph for a downstream
diagram layout engine.

    from diagram_engine import AnalysisRequest, RequestExecutor

    async with RequestExecutor.from_config() as executor:
        response = await executor.execute(AnalysisRequest.for_segment(text))
"""

from diagram_engine.llm.executor import RequestExecutor
from diagram_engine.llm.models import AnalysisRequest, AnalysisResponse, DiagramAnalysis, RequestOptions

__version__ = "0.1.0"

__all__ = [
    "AnalysisRequest",
    "AnalysisResponse",
    "DiagramAnalysis",
    "RequestExecutor",
    "RequestOptions",
    "__version__",
]
