"""
QA Resolver - Resolution Package

Selector and test data resolution backed by a durable knowledge cache.
Nothing here connects or loads configuration at import time; backends,
providers and generators are built by the hosting process and injected.

  - resolver.keys: build_selector_key, build_data_key
  - resolver.store: SelectorKnowledgeStore, DataKnowledgeStore, ensure_schema
  - resolver.selector: SelectorResolver
  - resolver.data: DataResolver, interpolate_placeholders, flatten_resolved_data
  - resolver.generation: GenerationAdapter, Ok, Err
  - resolver.config: ConfigProvider, ResolverConfig
"""

from resolver.errors import (
    ResolverError, GenerationUnavailable, InvalidGenerationOutput,
    UnresolvedPlaceholder, QueueOperationFailed, NotFound, InvalidJobState,
)
from resolver.keys import build_selector_key, build_data_key
