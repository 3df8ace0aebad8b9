from pathlib import Path

from pydantic import HttpUrl
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """App configuration"""

    model_config = SettingsConfigDict(  # pyright: ignore[reportUnannotatedClassAttribute]
        env_file='.env', env_file_encoding='utf-8', extra='ignore', protected_namespaces=()
    )

    # without a key everything runs offline on the template path
    openai_api_key: str | None = None
    openai_base_url: HttpUrl | None = None
    openai_timeout: float = 120.0
    openai_max_retries: int = 2

    model_name: str = 'gpt-4o-mini'
    vision_model_name: str = 'gpt-4o-mini'
    transcription_model_name: str = 'whisper-1'
    language: str = 'en'

    # seconds for the whole AI generation batch before falling back to templates
    generation_timeout: float | None = None

    flashcard_count: int = 10
    quiz_count: int = 10
    written_count: int = 5
    fill_count: int = 10

    data_dir: Path = Path('.studygraph')
    log_level: str = 'INFO'

    @property
    def ai_configured(self) -> bool:
        return bool(self.openai_api_key)


settings = Settings()
