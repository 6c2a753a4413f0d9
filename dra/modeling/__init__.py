"""
Data models: definitions, query compilation, refresh and join suggestions.
"""

from dra.modeling.definition import DataModelDefinition
from dra.modeling.join_suggestions import JoinSuggestionService
from dra.modeling.query_compiler import CompiledQuery, QueryCompiler
from dra.modeling.refresh import DataModelRefreshService, RefreshOutcome

__all__ = [
    "CompiledQuery",
    "DataModelDefinition",
    "DataModelRefreshService",
    "JoinSuggestionService",
    "QueryCompiler",
    "RefreshOutcome",
]
