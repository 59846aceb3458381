from datetime import datetime
from sqlalchemy import (
    Boolean,
    Column,
    Integer,
    SmallInteger,
    String,
    Date,
    DateTime,
    ForeignKey,
    Index,
    UniqueConstraint,
)
from app.core.database import Base


class Company(Base):
    """Company exported by SOC, keyed by its SOC code per owner."""

    __tablename__ = "companies"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner = Column(String, nullable=False, index=True)
    soc_code = Column(String, nullable=False)
    short_name = Column(String, nullable=True)
    corporate_name = Column(String, nullable=True)
    initial_corporate_name = Column(String, nullable=True)
    address = Column(String, nullable=True)
    address_number = Column(String, nullable=True)
    address_complement = Column(String, nullable=True)
    neighborhood = Column(String, nullable=True)
    city = Column(String, nullable=True)
    zip_code = Column(String, nullable=True)
    state = Column(String, nullable=True)
    tax_id = Column(String, nullable=True)
    state_registration = Column(String, nullable=True)
    municipal_registration = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=True)
    integration_client_code = Column(String, nullable=True)
    client_code = Column(String, nullable=True)
    is_placeholder = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (UniqueConstraint("soc_code", "owner", name="uix_company_code_owner"),)


class Employee(Base):
    """Employee exported by SOC, keyed by its SOC code per owner."""

    __tablename__ = "employees"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner = Column(String, nullable=False, index=True)
    soc_code = Column(String, nullable=False)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=True)
    company_soc_code = Column(String, nullable=True)
    company_name = Column(String, nullable=True)
    full_name = Column(String, nullable=False)
    unit_code = Column(String, nullable=True)
    unit_name = Column(String, nullable=True)
    sector_code = Column(String, nullable=True)
    sector_name = Column(String, nullable=True)
    position_code = Column(String, nullable=True)
    position_name = Column(String, nullable=True)
    position_cbo = Column(String, nullable=True)
    cost_center = Column(String, nullable=True)
    cost_center_name = Column(String, nullable=True)
    employee_registration = Column(String, nullable=True, index=True)
    cpf = Column(String, nullable=True)
    rg = Column(String, nullable=True)
    rg_state = Column(String, nullable=True)
    rg_issuer = Column(String, nullable=True)
    status = Column(String, nullable=True)
    gender = Column(SmallInteger, nullable=True)
    pis = Column(String, nullable=True)
    work_card = Column(String, nullable=True)
    work_card_series = Column(String, nullable=True)
    marital_status = Column(SmallInteger, nullable=True)
    contract_type = Column(SmallInteger, nullable=True)
    birth_date = Column(Date, nullable=True)
    hire_date = Column(Date, nullable=True)
    termination_date = Column(Date, nullable=True)
    address = Column(String, nullable=True)
    address_number = Column(String, nullable=True)
    neighborhood = Column(String, nullable=True)
    city = Column(String, nullable=True)
    state = Column(String, nullable=True)
    zip_code = Column(String, nullable=True)
    home_phone = Column(String, nullable=True)
    mobile_phone = Column(String, nullable=True)
    email = Column(String, nullable=True)
    is_disabled = Column(Boolean, nullable=True)
    disability_description = Column(String, nullable=True)
    mother_name = Column(String, nullable=True)
    last_update_date = Column(Date, nullable=True)
    hr_registration = Column(String, nullable=True)
    skin_color = Column(SmallInteger, nullable=True)
    education = Column(SmallInteger, nullable=True)
    birthplace = Column(String, nullable=True)
    extension = Column(String, nullable=True)
    shift_regime = Column(SmallInteger, nullable=True)
    work_regime = Column(String, nullable=True)
    commercial_phone = Column(String, nullable=True)
    work_shift = Column(SmallInteger, nullable=True)
    hr_unit = Column(String, nullable=True)
    hr_sector = Column(String, nullable=True)
    hr_position = Column(String, nullable=True)
    hr_cost_center_unit = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (UniqueConstraint("soc_code", "owner", name="uix_employee_code_owner"),)


class Absenteeism(Base):
    """Medical certificate / leave event. No business identity, insert-only."""

    __tablename__ = "absenteeism"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner = Column(String, nullable=False)
    employee_registration = Column(String, nullable=True)
    employee_id = Column(Integer, ForeignKey("employees.id"), nullable=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=True)
    unit = Column(String, nullable=True)
    sector = Column(String, nullable=True)
    birth_date = Column(Date, nullable=True)
    gender = Column(SmallInteger, nullable=True)
    certificate_type = Column(SmallInteger, nullable=True)
    start_date = Column(Date, nullable=True)
    end_date = Column(Date, nullable=True)
    start_time = Column(String, nullable=True)
    end_time = Column(String, nullable=True)
    days_absent = Column(Integer, nullable=True)
    hours_absent = Column(String, nullable=True)
    primary_icd = Column(String, nullable=True)
    icd_description = Column(String, nullable=True)
    pathological_group = Column(String, nullable=True)
    license_type = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_absenteeism_event", "employee_registration", "start_date", "primary_icd", "owner"),
    )


class ApiCredential(Base):
    """SOC export parameters per owner and data kind."""

    __tablename__ = "api_credentials"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner = Column(String, nullable=False)
    kind = Column(String, nullable=False)
    empresa = Column(String, nullable=False)
    codigo = Column(String, nullable=False)
    chave = Column(String, nullable=False)
    tipo_saida = Column(String, nullable=False, default="json")
    empresatrabalho = Column(String, nullable=True)
    datainicio = Column(String, nullable=True)
    datafim = Column(String, nullable=True)
    ativo = Column(String, nullable=True)
    inativo = Column(String, nullable=True)
    afastado = Column(String, nullable=True)
    pendente = Column(String, nullable=True)
    ferias = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (UniqueConstraint("owner", "kind", name="uix_credential_owner_kind"),)
