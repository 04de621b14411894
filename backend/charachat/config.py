from pydantic_settings import BaseSettings
from typing import List, Optional
from pydantic import field_validator
import json

class Settings(BaseSettings):
    # Application
    app_name: str = "Charachat"
    app_version: str = "0.1.0"
    debug: bool = False

    # Database
    database_url: str = "sqlite:///./data/charachat.db"
    data_dir: str = "./data"

    # LLM Configuration
    llm_api_type: str = "ollama"  # openai, openai-compatible, lm_studio, ollama, anthropic
    llm_base_url: str = "http://localhost:11434"
    llm_api_key: str = ""
    llm_model: str = "llama3"
    llm_max_tokens: int = 2048
    llm_temperature: float = 0.8
    llm_stop_sequences: List[str] = ["\nUser:", "User:", "\nHuman:", "Human:", "\n\nUser", "<|im_end|>"]

    # Embeddings
    embedding_provider: str = "auto"  # auto, litellm, sentence_transformers, mock
    embedding_model: str = "text-embedding-ada-002"
    embedding_api_key: str = ""
    embedding_dimensions: int = 1536
    embedding_batch_size: int = 100
    local_embedding_model: str = "sentence-transformers/all-MiniLM-L6-v2"

    # Character ingestion
    ingestion_chunk_size: int = 800
    ingestion_chunk_overlap: int = 100
    core_persona_max_words: int = 200
    generate_core_persona: bool = True

    # RAG retrieval defaults
    rag_max_results: int = 3
    rag_min_similarity: float = 0.7
    rag_weight_emotional: bool = True
    rag_boost_recent: bool = True
    rag_recency_floor: float = 0.1  # Recency multiplier never drops below this

    # Generation safety limits
    safety_max_concurrent: int = 3
    safety_max_prompt_length: int = 5000  # Characters
    safety_timeout_seconds: float = 60.0
    safety_memory_soft_mb: int = 1536
    safety_memory_hard_mb: int = 2048
    safety_memory_notice_mb: int = 1024
    safety_monitor_interval_seconds: float = 5.0
    emergency_stop_command: str = ""  # e.g. "pkill -f ollama"

    # Character engine defaults
    engine_prompt_strategy: str = "optimized"
    engine_use_rag: bool = True
    engine_token_budget: int = 300
    engine_generation_mode: str = "prompt"  # prompt or chat
    engine_history_limit: int = 50
    engine_history_context: int = 10

    # CORS
    cors_origins: str = "*"

    @field_validator('cors_origins', mode='after')
    @classmethod
    def parse_cors_origins(cls, v):
        """Parse CORS_ORIGINS from environment variable"""
        if isinstance(v, str):
            if v == "*":
                return ["*"]
            try:
                return json.loads(v)
            except (json.JSONDecodeError, ValueError):
                return [origin.strip() for origin in v.split(',')]
        return v

    # Logging
    log_level: str = "INFO"
    log_file: str = "./logs/charachat.log"

    class Config:
        env_file = "../.env"
        case_sensitive = False
        extra = "ignore"  # Ignore extra fields in .env that aren't in the model

# Create global settings instance
settings = Settings()
