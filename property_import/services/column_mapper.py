from __future__ import annotations

import logging
import re
import unicodedata
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from ..models.mapping import ColumnMapping, TargetField, UnknownTargetFieldError

"""Column mapping inference and override handling.

analyze() suggests a ColumnMapping from the CSV headers. It is pure and
deterministic, and never authorizes an import on its own: the caller must let
an operator confirm or edit the suggestion first.

Headers are normalized (mojibake repaired, accents stripped, lowercased,
punctuation turned into spaces) and matched against one anchored pattern per
target field. Headers that match nothing, or that would make the suggestion
ambiguous, are left out.
"""

logger = logging.getLogger(__name__)

__all__ = [
    "MappingSuggestion",
    "MappingValidationError",
    "analyze",
    "normalize_header",
    "validate_mapping",
    "mapping_from_pairs",
    "load_mapping_file",
    "dump_mapping_file",
]


class MappingValidationError(Exception):
    """Raised when a mapping cannot be used to start an import."""

    def __init__(self, problems: Sequence[str]) -> None:
        self.problems = list(problems)
        super().__init__("; ".join(self.problems) or "invalid column mapping")


@dataclass(frozen=True)
class MappingSuggestion:
    suggested_mapping: ColumnMapping
    total_rows: int
    unmapped_headers: tuple[str, ...] = ()
    ambiguous_headers: tuple[str, ...] = ()


# 正規化後ヘッダに対するパターン (アクセント除去・小文字化済)
FIELD_PATTERNS: dict[TargetField, re.Pattern[str]] = {
    TargetField.NAME: re.compile(
        r"^(nome|name|propriedade|property|nome (da )?propriedade|property name)$"
    ),
    TargetField.LATITUDE: re.compile(r"^(lat|latitude)$"),
    TargetField.LONGITUDE: re.compile(r"^(lng|lon|long|longitude)$"),
    TargetField.COORDINATES_COMBINED: re.compile(
        r"^(coordenadas?|coordinates?|coords?|lat ?lng|lat ?long|lat ?lon|latitude ?longitude|localizacao)$"
    ),
    TargetField.CIDADE: re.compile(r"^(cidade|city|municipio)$"),
    TargetField.BAIRRO: re.compile(r"^(bairro|neighbou?rhood|localidade)$"),
    TargetField.OWNER_NAME: re.compile(
        r"^(proprietario|owner|dono|nome (do )?proprietario|owner name)$"
    ),
    TargetField.OWNER_PHONE: re.compile(
        r"^(telefone|phone|celular|telefone (do )?proprietario|owner phone)$"
    ),
    TargetField.OWNER_RG: re.compile(r"^(rg|documento|rg (do )?proprietario|owner rg)$"),
    TargetField.EQUIPE: re.compile(r"^(equipe|team)$"),
    TargetField.NUMERO_PLACA: re.compile(r"^(placa|numero (da )?placa|n placa|plate)$"),
    TargetField.DESCRIPTION: re.compile(r"^(descricao|description)$"),
    TargetField.CONTACT_NAME: re.compile(r"^(contato|nome (do )?contato|contact|contact name)$"),
    TargetField.CONTACT_PHONE: re.compile(r"^(telefone (do )?contato|contact phone)$"),
    TargetField.CONTACT_OBSERVATIONS: re.compile(
        r"^(observac(oes|ao) (do )?contato|contact observations?)$"
    ),
    TargetField.OBSERVATIONS: re.compile(r"^(observac(oes|ao)|observations?|obs)$"),
    TargetField.ACTIVITY: re.compile(r"^(atividade|activity)$"),
    TargetField.HAS_CAMERAS: re.compile(r"^(cameras|possui.*cameras|has cameras)$"),
    TargetField.CAMERAS_COUNT: re.compile(
        r"^(qtd.*cameras|quantidade.*cameras|numero (de )?cameras|cameras count)$"
    ),
    TargetField.HAS_WIFI: re.compile(r"^(wifi|wi fi|possui.*wi ?fi|has wi ?fi)$"),
    TargetField.WIFI_PASSWORD: re.compile(
        r"^(senha.*wi ?fi|password.*wi ?fi|wi ?fi.*senha|wi ?fi.*password)$"
    ),
    TargetField.RESIDENTS_COUNT: re.compile(
        r"^(moradores|(numero|qtd|quantidade) (de )?moradores|residentes|residents( count)?)$"
    ),
    TargetField.CADASTRO_DATE: re.compile(
        r"^(data|date|cadastro|registro|data (de |do )?cadastro|data (de |do )?registro)$"
    ),
}


def _repair_mojibake(text: str) -> str:
    """Undo UTF-8 bytes that were decoded as MacRoman or Latin-1.

    ``"propriet√°rio"`` → ``"proprietário"``. Strings that do not round-trip
    are returned unchanged.
    """
    for codec in ("mac_roman", "latin-1"):
        try:
            repaired = text.encode(codec).decode("utf-8")
        except (UnicodeEncodeError, UnicodeDecodeError):
            continue
        if repaired != text:
            return repaired
    return text


def normalize_header(header: Any) -> str:
    text = _repair_mojibake(str(header))
    text = unicodedata.normalize("NFKD", text)
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    text = text.lower()
    text = re.sub(r"[^a-z0-9]+", " ", text)
    return text.strip()


def _match_fields(normalized: str) -> list[TargetField]:
    if not normalized:
        return []
    return [field for field, pattern in FIELD_PATTERNS.items() if pattern.match(normalized)]


def analyze(
    headers: Sequence[Any] | None,
    sample_rows: Sequence[Sequence[Any]] | None = None,
    total_rows: int | None = None,
) -> MappingSuggestion:
    """Suggest a column mapping for ``headers``.

    Parameters
    ----------
    headers: CSV ヘッダ列名
    sample_rows: 先頭数行 (推論には使わず、行数の概算にのみ使用)
    total_rows: 呼び出し側で数えた総行数 (None なら sample_rows の件数)

    Never raises for malformed input: anything unusable yields an empty
    suggestion.
    """
    rows_count = total_rows
    if rows_count is None:
        try:
            rows_count = len(sample_rows) if sample_rows is not None else 0
        except TypeError:
            rows_count = 0

    try:
        header_list = [h for h in headers] if headers is not None else []
    except TypeError:
        logger.debug("analyze: headers not iterable (%r)", type(headers).__name__)
        return MappingSuggestion(suggested_mapping=ColumnMapping(), total_rows=rows_count)

    candidates: list[tuple[str, TargetField]] = []
    unmapped: list[str] = []
    ambiguous: list[str] = []
    seen_sources: set[str] = set()
    for raw_header in header_list:
        if raw_header is None:
            continue
        source = str(raw_header).strip()
        if not source or source in seen_sources:
            continue
        seen_sources.add(source)
        matches = _match_fields(normalize_header(source))
        if len(matches) == 1:
            candidates.append((source, matches[0]))
        elif len(matches) > 1:
            ambiguous.append(source)
        else:
            unmapped.append(source)

    # 同一ターゲットに複数ヘッダが一致した場合はどれも採用しない
    claims: dict[TargetField, int] = {}
    for _, target in candidates:
        claims[target] = claims.get(target, 0) + 1
    accepted: list[tuple[str, TargetField]] = []
    for source, target in candidates:
        if claims[target] > 1:
            ambiguous.append(source)
        else:
            accepted.append((source, target))

    suggestion = ColumnMapping.from_pairs(accepted)
    logger.debug(
        "analyze: suggested=%s unmapped=%s ambiguous=%s",
        suggestion.to_dict(),
        unmapped,
        ambiguous,
    )
    return MappingSuggestion(
        suggested_mapping=suggestion,
        total_rows=rows_count,
        unmapped_headers=tuple(unmapped),
        ambiguous_headers=tuple(ambiguous),
    )


def validate_mapping(mapping: ColumnMapping, headers: Sequence[str] | None = None) -> list[str]:
    """Return operator-facing complaints; empty when import may start."""
    problems = mapping.validation_errors()
    if headers is not None:
        known = set(headers)
        absent = [source for source in mapping if source not in known]
        if absent:
            problems.append(f"mapped columns not in file: {', '.join(absent)}")
    return problems


def mapping_from_pairs(pairs: Iterable[tuple[str, str | None]]) -> ColumnMapping:
    """Build the operator override from ordered ``(source, target | "")`` pairs."""
    try:
        return ColumnMapping.from_pairs(pairs)
    except UnknownTargetFieldError as e:
        raise MappingValidationError([str(e)]) from e


def load_mapping_file(path: Path) -> ColumnMapping:
    """Load an operator-edited mapping.

    Accepts either a list of ``{source: ..., target: ...}`` items (ordered
    form written by dump_mapping_file) or a plain ``source: target`` dict.
    """
    if not path.exists():
        raise MappingValidationError([f"mapping file not found: {path}"])
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise MappingValidationError([f"invalid mapping yaml: {e}"]) from e

    if isinstance(data, dict):
        data = data.get("columns", data)
    pairs: list[tuple[str, str | None]] = []
    if isinstance(data, dict):
        pairs = [(str(k), v) for k, v in data.items()]
    elif isinstance(data, list):
        for item in data:
            if not isinstance(item, dict) or "source" not in item:
                raise MappingValidationError([f"invalid mapping entry: {item!r}"])
            pairs.append((str(item["source"]), item.get("target")))
    else:
        raise MappingValidationError([f"invalid mapping file: {path}"])
    return mapping_from_pairs(pairs)


def dump_mapping_file(mapping: ColumnMapping, headers: Sequence[str], path: Path) -> Path:
    """Write the editable ordered form: every header, with "" for unmapped ones."""
    items = [{"source": h, "target": mapping.get(h).value if h in mapping else ""} for h in headers]
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        yaml.safe_dump({"columns": items}, allow_unicode=True, sort_keys=False),
        encoding="utf-8",
    )
    return path
