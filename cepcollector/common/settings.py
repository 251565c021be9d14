"""Collector configuration.

CollectorSettings holds everything that ties the collector to a particular
source site: form URLs, selectors, wait bounds, the politeness interval,
browser options and the label vocabulary used to recognise result fields.
Adapting to a changed page layout is a settings change.

Example::

    from cepcollector.common.settings import CollectorSettings

    settings = CollectorSettings.from_file(Path("collector.json"))
    settings = settings.model_copy(update={"politeness_interval": 5.0})
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field, ValidationError, field_validator

from cepcollector.common.exceptions import CollectorException

CANONICAL_FIELDS = ("code", "street", "neighborhood", "city", "region")

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)

# Matched in order as case-insensitive substrings of a table label cell.
DEFAULT_LABELS: dict[str, str] = {
    "logradouro": "street",
    "bairro": "neighborhood",
    "localidade": "city",
    "cep": "code",
}


class CollectorSettings(BaseModel):
    """Settings for the browser driver, walker and politeness limiter.

    Timeouts are in milliseconds (as Playwright takes them); the politeness
    interval is in seconds.
    """

    postal_code_url: str = (
        "https://buscacepinter.correios.com.br/app/endereco/index.php"
    )
    locality_url: str = "https://buscacepinter.correios.com.br/app/localidade_logradouro/index.php"

    postal_code_input_selector: str = "#endereco"
    submit_selector: str = "#btn_pesquisar"
    region_select_selector: str = "#uf"
    locality_input_selector: str = "#localidade"
    # e.g. 'a:text-is("{letter}")' for sites that ask for an initial first
    letter_link_selector: str | None = None
    result_selector: str = "table"
    next_page_selector: str = "#btn_proximo"

    selector_timeout_ms: float = 10_000
    result_timeout_ms: float = 5_000
    navigation_timeout_ms: float = 30_000

    politeness_interval: float = Field(default=2.0, ge=0)
    max_locality_pages: int = Field(default=20, ge=1)

    browser_type: str = "chromium"
    headless: bool = True
    user_agent: str | None = DEFAULT_USER_AGENT
    locale: str = "pt-BR"
    timezone_id: str = "America/Sao_Paulo"
    viewport: dict[str, int] = Field(
        default_factory=lambda: {"width": 1280, "height": 720}
    )

    labels: dict[str, str] = Field(
        default_factory=lambda: dict(DEFAULT_LABELS)
    )
    locality_columns: list[str] = Field(
        default_factory=lambda: ["street", "neighborhood", "city", "code"]
    )

    @field_validator("browser_type")
    @classmethod
    def _check_browser(cls, value: str) -> str:
        if value not in ("chromium", "firefox", "webkit"):
            raise ValueError(f"unknown browser type {value!r}")
        return value

    @field_validator("labels")
    @classmethod
    def _check_labels(cls, value: dict[str, str]) -> dict[str, str]:
        unknown = set(value.values()) - set(CANONICAL_FIELDS)
        if unknown:
            raise ValueError(f"labels map to unknown fields: {sorted(unknown)}")
        return {label.lower(): name for label, name in value.items()}

    @field_validator("locality_columns")
    @classmethod
    def _check_columns(cls, value: list[str]) -> list[str]:
        unknown = set(value) - set(CANONICAL_FIELDS) - {""}
        if unknown:
            raise ValueError(
                f"locality columns name unknown fields: {sorted(unknown)}"
            )
        return value

    @classmethod
    def from_file(cls, path: Path) -> CollectorSettings:
        """Load settings from a JSON file; missing keys keep their defaults.

        Raises:
            CollectorException: If the file cannot be read or is invalid.
        """
        try:
            return cls.model_validate_json(path.read_text(encoding="utf-8"))
        except OSError as e:
            raise CollectorException(
                f"Could not read settings file: {e}", {"path": str(path)}
            ) from e
        except ValidationError as e:
            raise CollectorException(
                "Invalid settings file",
                {"path": str(path), "errors": e.errors()},
            ) from e
