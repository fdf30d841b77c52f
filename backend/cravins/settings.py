from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field

class Settings(BaseSettings):
	gemini_api_key: str | None = Field(default=None, validation_alias="GEMINI_API_KEY")
	# Provider can be "vertex" (Vertex AI Express) or "ai_studio" (Generative Language API)
	gemini_provider: str = Field(default="ai_studio", validation_alias="GEMINI_PROVIDER")
	gemini_model: str = Field(default="gemini-2.0-flash-lite", validation_alias="GEMINI_MODEL")
	gemini_timeout_seconds: float = Field(default=60.0, validation_alias="GEMINI_TIMEOUT_SECONDS")
	vertex_region: str = Field(default="us-central1", validation_alias="GEMINI_VERTEX_REGION")
	vertex_project: str | None = Field(default=None, validation_alias="GEMINI_VERTEX_PROJECT")

	# OpenRouter fallback configuration (optional)
	openrouter_api_key: str | None = Field(default=None, validation_alias="OPENROUTER_API_KEY")
	openrouter_model: str = Field(default="google/gemini-2.0-flash-lite-001", validation_alias="OPENROUTER_MODEL")
	openrouter_base_url: str = Field(default="https://openrouter.ai/api/v1/chat/completions", validation_alias="OPENROUTER_BASE_URL")
	openrouter_referer: str = Field(default="https://localhost", validation_alias="OPENROUTER_HTTP_REFERER")
	openrouter_title: str = Field(default="Cravins CBT", validation_alias="OPENROUTER_TITLE")

	jwt_secret_key: str = Field(default="change-me", validation_alias="JWT_SECRET_KEY")
	jwt_algorithm: str = Field(default="HS256", validation_alias="JWT_ALGORITHM")
	access_token_expire_minutes: int = Field(default=24 * 60, validation_alias="ACCESS_TOKEN_EXPIRE_MINUTES")
	# Seed admin, created at startup when both are set
	seed_admin_email: str | None = Field(default=None, validation_alias="SEED_ADMIN_EMAIL")
	seed_admin_password: str | None = Field(default=None, validation_alias="SEED_ADMIN_PASSWORD")

	database_url: str | None = Field(default=None, validation_alias="DATABASE_URL")

	# Nigerian senior secondary curriculum caps
	max_topics_per_subject: int = Field(default=70, validation_alias="MAX_TOPICS_PER_SUBJECT")
	topic_batch_size: int = Field(default=14, validation_alias="TOPIC_BATCH_SIZE")

	# Lapsed paid access sweep (0 disables the periodic loop)
	access_sweep_interval_seconds: int = Field(default=24 * 60 * 60, validation_alias="ACCESS_SWEEP_INTERVAL_SECONDS")

	log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

	model_config = SettingsConfigDict(env_file=".env", extra="ignore")

settings = Settings()
