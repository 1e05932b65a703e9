"""
Configuration management for AWS services and learning pipeline settings.
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


@dataclass
class BedrockLLMConfig:
    """Configuration for the Amazon Bedrock judgment model."""
    region: str
    model_id: str
    max_tokens: int
    temperature: float
    retry_attempts: int
    retry_delay: float


@dataclass
class BedrockEmbedConfig:
    """Configuration for Amazon Bedrock Embed service."""
    region: str
    model_id: str
    dimension: int
    retry_attempts: int
    retry_delay: float


@dataclass
class NeptuneConfig:
    """Configuration for Amazon Neptune graph database."""
    endpoint: str
    port: int
    region: str


@dataclass
class OpenSearchConfig:
    """Configuration for the memory vector index."""
    endpoint: str
    port: int
    region: str
    index_name: str
    dimension: int


@dataclass
class EventBusConfig:
    """Configuration for the pipeline event transport."""
    backend: str
    queue_url: str
    region: str
    wait_seconds: int
    max_messages: int
    visibility_timeout: int


@dataclass
class PipelineConfig:
    """Thresholds and retry budget of the interaction learning pipeline."""
    retrieval_limit: int
    retrieval_min_score: float
    pattern_min_score: float
    similarity_threshold: float
    similarity_limit: int
    job_attempts: int
    job_retry_delay: float
    inherit_evidence: bool
    inherit_min_similarity: float


@dataclass
class MCPConfig:
    """Configuration for MCP interface."""
    transport: str
    host: str
    port: int


@dataclass
class AppConfig:
    """Main application configuration."""
    environment: str
    log_level: str
    bedrock_llm: BedrockLLMConfig
    bedrock_embed: BedrockEmbedConfig
    neptune: NeptuneConfig
    opensearch: OpenSearchConfig
    event_bus: EventBusConfig
    pipeline: PipelineConfig
    mcp: MCPConfig


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')
    embed_dimension = os.getenv('BEDROCK_EMBED_DIMENSION', '1024')

    # Judgment model configuration
    bedrock_llm_config = BedrockLLMConfig(region=os.getenv('BEDROCK_LLM_AWS_REGION', 'us-east-1'),
                                          model_id=os.getenv('BEDROCK_LLM_MODEL_ID', 'anthropic.claude-3-sonnet-20240229-v1:0'),
                                          max_tokens=int(os.getenv('BEDROCK_LLM_MAX_TOKENS', '2048')),
                                          temperature=float(os.getenv('BEDROCK_LLM_TEMPERATURE', '0.0')),
                                          retry_attempts=int(os.getenv('BEDROCK_LLM_RETRY_ATTEMPTS', '3')),
                                          retry_delay=float(os.getenv('BEDROCK_LLM_RETRY_DELAY', '1.0')))

    # Bedrock Embed configuration
    bedrock_embed_config = BedrockEmbedConfig(region=os.getenv('BEDROCK_EMBED_AWS_REGION', 'us-east-1'),
                                              model_id=os.getenv('BEDROCK_EMBED_MODEL_ID', 'amazon.titan-embed-text-v2:0'),
                                              dimension=int(embed_dimension),
                                              retry_attempts=int(os.getenv('BEDROCK_EMBED_RETRY_ATTEMPTS', '3')),
                                              retry_delay=float(os.getenv('BEDROCK_EMBED_RETRY_DELAY', '1.0')))

    # Neptune configuration
    neptune_config = NeptuneConfig(endpoint=os.getenv('NEPTUNE_ENDPOINT', 'localhost'),
                                   port=int(os.getenv('NEPTUNE_PORT', '8182')),
                                   region=os.getenv('NEPTUNE_AWS_REGION', 'us-east-1'))

    # Vector index must share the embedding dimension
    opensearch_config = OpenSearchConfig(endpoint=os.getenv('OPENSEARCH_ENDPOINT', 'localhost'),
                                         port=int(os.getenv('OPENSEARCH_PORT', '443')),
                                         region=os.getenv('OPENSEARCH_AWS_REGION', 'us-east-1'),
                                         index_name=os.getenv('OPENSEARCH_INDEX', 'memory_embeddings'),
                                         dimension=int(os.getenv('OPENSEARCH_DIMENSION', embed_dimension)))

    # Event transport configuration
    event_bus_config = EventBusConfig(backend=os.getenv('EVENT_BUS_BACKEND', 'sqs'),
                                      queue_url=os.getenv('EVENT_QUEUE_URL', ''),
                                      region=os.getenv('EVENT_QUEUE_AWS_REGION', 'us-east-1'),
                                      wait_seconds=int(os.getenv('EVENT_QUEUE_WAIT_SECONDS', '20')),
                                      max_messages=int(os.getenv('EVENT_QUEUE_MAX_MESSAGES', '10')),
                                      visibility_timeout=int(os.getenv('EVENT_QUEUE_VISIBILITY_TIMEOUT', '120')))

    # Learning pipeline configuration
    pipeline_config = PipelineConfig(retrieval_limit=int(os.getenv('PIPELINE_RETRIEVAL_LIMIT', '3')),
                                     retrieval_min_score=float(os.getenv('PIPELINE_RETRIEVAL_MIN_SCORE', '0.75')),
                                     pattern_min_score=float(os.getenv('PIPELINE_PATTERN_MIN_SCORE', '0.8')),
                                     similarity_threshold=float(os.getenv('PIPELINE_SIMILARITY_THRESHOLD', '0.8')),
                                     similarity_limit=int(os.getenv('PIPELINE_SIMILARITY_LIMIT', '5')),
                                     job_attempts=int(os.getenv('PIPELINE_JOB_ATTEMPTS', '3')),
                                     job_retry_delay=float(os.getenv('PIPELINE_JOB_RETRY_DELAY', '2.0')),
                                     inherit_evidence=_env_bool('PIPELINE_INHERIT_EVIDENCE', 'true'),
                                     inherit_min_similarity=float(os.getenv('PIPELINE_INHERIT_MIN_SIMILARITY', '0.8')))

    # MCP configuration
    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'sse'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=int(os.getenv('MCP_PORT', '8000')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     bedrock_llm=bedrock_llm_config,
                     bedrock_embed=bedrock_embed_config,
                     neptune=neptune_config,
                     opensearch=opensearch_config,
                     event_bus=event_bus_config,
                     pipeline=pipeline_config,
                     mcp=mcp_config)


# Global configuration instance
config = load_config()
