"""
Pipeline worker: consume pipeline events from the queue and run the learning jobs.
"""

import signal
from typing import Optional

from .services.evaluation import EvaluationRecorder, RubricEvaluator
from .services.memory_writer import MemoryWriter
from .services.pattern_extraction import PatternExtractor
from .services.pipeline import PipelineCoordinator
from .services.similarity_linker import SimilarityLinker
from .services.statistics import StatisticsAggregator
from .utils.bedrock_embed import BedrockEmbed
from .utils.bedrock_llm import BedrockLLM
from .utils.config import config
from .utils.event_bus import EventBus, InMemoryEventBus, SQSEventBus, create_event_bus
from .utils.logging_config import get_logger
from .utils.neptune_client import NeptuneClient
from .utils.opensearch_client import OpenSearchClient

logger = get_logger(__name__)


def build_coordinator(bus: EventBus,
                      neptune: Optional[NeptuneClient] = None,
                      opensearch: Optional[OpenSearchClient] = None,
                      embed: Optional[BedrockEmbed] = None,
                      llm: Optional[BedrockLLM] = None) -> PipelineCoordinator:
    """Wire the pipeline services around one shared set of clients and subscribe them to ``bus``."""
    neptune = neptune or NeptuneClient(config.neptune)
    if opensearch is None:
        opensearch = OpenSearchClient(config.opensearch)
        opensearch.create_index_if_not_exists()
    embed = embed or BedrockEmbed(config.bedrock_embed)
    llm = llm or BedrockLLM(config.bedrock_llm)

    coordinator = PipelineCoordinator(bus,
                                      evaluator=RubricEvaluator(llm),
                                      writer=MemoryWriter(neptune, opensearch, embed),
                                      pattern_extractor=PatternExtractor(neptune),
                                      similarity_linker=SimilarityLinker(neptune, opensearch),
                                      statistics=StatisticsAggregator(neptune),
                                      recorder=EvaluationRecorder(neptune))
    coordinator.register()
    return coordinator


def main():
    bus = create_event_bus(config.event_bus)
    build_coordinator(bus)

    if isinstance(bus, SQSEventBus):

        def _shutdown(signum, frame):
            logger.info(f'Received signal {signum}, stopping after the current batch')
            bus.stop()

        signal.signal(signal.SIGTERM, _shutdown)
        signal.signal(signal.SIGINT, _shutdown)
        bus.run_forever()

    elif isinstance(bus, InMemoryEventBus):
        # Nothing outlives the process with this backend; run the MCP server to feed it
        logger.warning('In-memory event bus selected, the worker has nothing to consume')
        bus.drain()


if __name__ == '__main__':
    main()
