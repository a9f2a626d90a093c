from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        case_sensitive=False,
        extra='ignore',
        populate_by_name=True,
    )

    app_name: str = 'SignedPDF'

    data_dir: Path = Field(default=Path('./data'))
    log_level: str = 'INFO'

    # Public verification links embedded in the QR code
    verify_base_url: str = Field(
        default='http://localhost:3000',
        validation_alias=AliasChoices('VERIFY_BASE_URL', 'BASE_URL', 'NEXT_PUBLIC_BASE_URL'),
    )

    # Import / fetch
    document_ttl_days: int = 14
    max_pdf_bytes: int = 50 * 1024 * 1024
    fetch_timeout_seconds: float = 60.0

    # Annotation rendering defaults
    default_stroke_width_pt: float = 2.0
    default_font_size_pt: float = 16.0
    text_font_name: str = 'helv'

    # Footer on the last content page
    footer_captions: tuple[str, str, str] = (
        'This document was electronically signed and assembled.',
        'Scan the code to verify it is the current authoritative version.',
        'Any modification after finalization invalidates this verification.',
    )
    footer_qr_size_pt: float = 48.0
    footer_font_size_pt: float = 7.0

    # Certificate page
    certificate_title: str = 'Certificate of Completion'
    certificate_max_entries: int = 30
    certificate_qr_size_pt: float = 96.0
    pdf_producer: str = 'SignedPDF'

    def verification_url(self, document_id: str, integrity_token: str) -> str:
        base = self.verify_base_url.rstrip('/')
        return f'{base}/verify/{document_id}?integrity={integrity_token}'


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    settings = Settings()
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    (settings.data_dir / 'documents').mkdir(parents=True, exist_ok=True)
    (settings.data_dir / 'blobs').mkdir(parents=True, exist_ok=True)
    return settings
