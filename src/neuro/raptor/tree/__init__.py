from neuro.raptor.tree.builder import TreeBuilder
from neuro.raptor.tree.clustering import (
    GaussianMixtureClusterer,
    ThresholdClusterer,
    get_clusterer,
)
from neuro.raptor.tree.incremental import FileTracker, IncrementalUpdater
from neuro.raptor.tree.models import (
    BuildProgress,
    BuildStats,
    SearchResult,
    UpdateStats,
)
from neuro.raptor.tree.retriever import (
    TreeRetriever,
    fallback_context,
    format_context,
)
from neuro.raptor.tree.summarizer import (
    ClusterSummarizer,
    LLMSummarizer,
    SummarizerBase,
)

__all__ = [
    "BuildProgress",
    "BuildStats",
    "ClusterSummarizer",
    "FileTracker",
    "GaussianMixtureClusterer",
    "IncrementalUpdater",
    "LLMSummarizer",
    "SearchResult",
    "SummarizerBase",
    "ThresholdClusterer",
    "TreeBuilder",
    "TreeRetriever",
    "UpdateStats",
    "fallback_context",
    "format_context",
    "get_clusterer",
]
