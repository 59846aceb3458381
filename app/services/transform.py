"""Batch splitting and conversion of raw SOC records into table rows."""

from datetime import date, datetime, timezone
from typing import Any, Callable
import logging

from app.services.errors import RecordProcessingError

logger = logging.getLogger(__name__)

SMALLINT_MIN = -32768
SMALLINT_MAX = 32767

_DATE_FORMATS = (
    "%d/%m/%Y",
    "%d/%m/%Y %H:%M:%S",
    "%Y-%m-%d",
    "%Y-%m-%d %H:%M:%S",
)


def split_batches(records: list, batch_size: int) -> list[list]:
    """Partition records into contiguous batches, preserving order."""
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")
    return [records[i:i + batch_size] for i in range(0, len(records), batch_size)]


def total_batches(record_count: int, batch_size: int) -> int:
    return -(-record_count // batch_size)


def _text(value: Any) -> str | None:
    """Coerce a SOC value to a stripped string, empty meaning None."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _smallint(value: Any, field: str) -> int | None:
    """
    Coerce a coded numeric field to fit a SMALLINT column.

    SOC uses out-of-range magnitudes as sentinels; those become None.
    A value that is not numeric at all marks the record as malformed.
    """
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, str):
        try:
            value = float(value.strip().replace(",", "."))
        except ValueError:
            raise RecordProcessingError(f"{field}: expected a number, got {value!r}")
    if isinstance(value, float):
        if not value.is_integer():
            raise RecordProcessingError(f"{field}: expected an integer, got {value!r}")
        value = int(value)
    if not isinstance(value, int):
        raise RecordProcessingError(f"{field}: expected a number, got {type(value).__name__}")
    if value < SMALLINT_MIN or value > SMALLINT_MAX:
        return None
    return value


def _int_or_none(value: Any) -> int | None:
    """Lenient integer coercion: anything unusable becomes None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return None


def _flag(value: Any) -> bool:
    return value in (1, "1", True, "S", "s")


def _parse_date(value: Any) -> date | None:
    """Parse a SOC date. Unparseable or absent values become None."""
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        # Epoch milliseconds
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc).date()
        except (OverflowError, OSError, ValueError):
            return None
    if not isinstance(value, str):
        return None

    text = value.strip()
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        logger.debug(f"Unparseable date {text!r}")
        return None


def transform_company(item: dict, owner: str) -> dict[str, Any]:
    """Map a SOC company export record to a companies row."""
    soc_code = _text(item.get("CODIGO"))
    if soc_code is None:
        raise RecordProcessingError("company record without CODIGO")

    return {
        "owner": owner,
        "soc_code": soc_code,
        "short_name": _text(item.get("NOMEABREVIADO")),
        "corporate_name": _text(item.get("RAZAOSOCIAL")),
        "initial_corporate_name": _text(item.get("RAZAOSOCIALINICIAL")),
        "address": _text(item.get("ENDERECO")),
        "address_number": _text(item.get("NUMEROENDERECO")),
        "address_complement": _text(item.get("COMPLEMENTOENDERECO")),
        "neighborhood": _text(item.get("BAIRRO")),
        "city": _text(item.get("CIDADE")),
        "zip_code": _text(item.get("CEP")),
        "state": _text(item.get("UF")),
        "tax_id": _text(item.get("CNPJ")),
        "state_registration": _text(item.get("INSCRICAOESTADUAL")),
        "municipal_registration": _text(item.get("INSCRICAOMUNICIPAL")),
        "is_active": _flag(item.get("ATIVO")),
        "integration_client_code": _text(item.get("CODIGOCLIENTEINTEGRACAO")),
        "client_code": _text(item.get("CÓD. CLIENTE")),
        "is_placeholder": False,
    }


def transform_employee(item: dict, owner: str) -> dict[str, Any]:
    """
    Map a SOC employee export record to an employees row.

    company_id is left as None; the executor resolves it from
    company_soc_code (creating a placeholder company when needed).
    """
    soc_code = _text(item.get("CODIGO"))
    full_name = _text(item.get("NOME"))
    if soc_code is None or full_name is None:
        raise RecordProcessingError("employee record without CODIGO or NOME")

    return {
        "owner": owner,
        "soc_code": soc_code,
        "company_id": None,
        "company_soc_code": _text(item.get("CODIGOEMPRESA")),
        "company_name": _text(item.get("NOMEEMPRESA")),
        "full_name": full_name,
        "unit_code": _text(item.get("CODIGOUNIDADE")),
        "unit_name": _text(item.get("NOMEUNIDADE")),
        "sector_code": _text(item.get("CODIGOSETOR")),
        "sector_name": _text(item.get("NOMESETOR")),
        "position_code": _text(item.get("CODIGOCARGO")),
        "position_name": _text(item.get("NOMECARGO")),
        "position_cbo": _text(item.get("CBOCARGO")),
        "cost_center": _text(item.get("CCUSTO")),
        "cost_center_name": _text(item.get("NOMECENTROCUSTO")),
        "employee_registration": _text(item.get("MATRICULAFUNCIONARIO")),
        "cpf": _text(item.get("CPF")),
        "rg": _text(item.get("RG")),
        "rg_state": _text(item.get("UFRG")),
        "rg_issuer": _text(item.get("ORGAOEMISSORRG")),
        "status": _text(item.get("SITUACAO")),
        "gender": _smallint(item.get("SEXO"), "SEXO"),
        "pis": _text(item.get("PIS")),
        "work_card": _text(item.get("CTPS")),
        "work_card_series": _text(item.get("SERIECTPS")),
        "marital_status": _smallint(item.get("ESTADOCIVIL"), "ESTADOCIVIL"),
        "contract_type": _smallint(item.get("TIPOCONTATACAO"), "TIPOCONTATACAO"),
        "birth_date": _parse_date(item.get("DATA_NASCIMENTO")),
        "hire_date": _parse_date(item.get("DATA_ADMISSAO")),
        "termination_date": _parse_date(item.get("DATA_DEMISSAO")),
        "address": _text(item.get("ENDERECO")),
        "address_number": _text(item.get("NUMERO_ENDERECO")),
        "neighborhood": _text(item.get("BAIRRO")),
        "city": _text(item.get("CIDADE")),
        "state": _text(item.get("UF")),
        "zip_code": _text(item.get("CEP")),
        "home_phone": _text(item.get("TELEFONERESIDENCIAL")),
        "mobile_phone": _text(item.get("TELEFONECELULAR")),
        "email": _text(item.get("EMAIL")),
        "is_disabled": _flag(item.get("DEFICIENTE")),
        "disability_description": _text(item.get("DEFICIENCIA")),
        "mother_name": _text(item.get("NM_MAE_FUNCIONARIO")),
        "last_update_date": _parse_date(item.get("DATAULTALTERACAO")),
        "hr_registration": _text(item.get("MATRICULARH")),
        "skin_color": _smallint(item.get("COR"), "COR"),
        "education": _smallint(item.get("ESCOLARIDADE"), "ESCOLARIDADE"),
        "birthplace": _text(item.get("NATURALIDADE")),
        "extension": _text(item.get("RAMAL")),
        "shift_regime": _smallint(item.get("REGIMEREVEZAMENTO"), "REGIMEREVEZAMENTO"),
        "work_regime": _text(item.get("REGIMETRABALHO")),
        "commercial_phone": _text(item.get("TELCOMERCIAL")),
        "work_shift": _smallint(item.get("TURNOTRABALHO"), "TURNOTRABALHO"),
        "hr_unit": _text(item.get("RHUNIDADE")),
        "hr_sector": _text(item.get("RHSETOR")),
        "hr_position": _text(item.get("RHCARGO")),
        "hr_cost_center_unit": _text(item.get("RHCENTROCUSTOUNIDADE")),
    }


def transform_absenteeism(item: dict, owner: str) -> dict[str, Any]:
    """Map a SOC absenteeism export record to an absenteeism row."""
    return {
        "owner": owner,
        "employee_registration": _text(item.get("MATRICULA_FUNC")),
        "employee_id": None,
        "company_id": None,
        "unit": _text(item.get("UNIDADE")),
        "sector": _text(item.get("SETOR")),
        "birth_date": _parse_date(item.get("DT_NASCIMENTO")),
        "gender": _smallint(item.get("SEXO"), "SEXO"),
        "certificate_type": _smallint(item.get("TIPO_ATESTADO"), "TIPO_ATESTADO"),
        "start_date": _parse_date(item.get("DT_INICIO_ATESTADO")),
        "end_date": _parse_date(item.get("DT_FIM_ATESTADO")),
        "start_time": _text(item.get("HORA_INICIO_ATESTADO")),
        "end_time": _text(item.get("HORA_FIM_ATESTADO")),
        "days_absent": _int_or_none(item.get("DIAS_AFASTADOS")),
        "hours_absent": _text(item.get("HORAS_AFASTADO")),
        "primary_icd": _text(item.get("CID_PRINCIPAL")),
        "icd_description": _text(item.get("DESCRICAO_CID")),
        "pathological_group": _text(item.get("GRUPO_PATOLOGICO")),
        "license_type": _text(item.get("TIPO_LICENCA")),
    }


TRANSFORMERS: dict[str, Callable[[dict, str], dict[str, Any]]] = {
    "company": transform_company,
    "employee": transform_employee,
    "absenteeism": transform_absenteeism,
}
