"""
Modelos de configuração de pagamento por evento e dos resultados do cálculo de taxas.
Cada método de pagamento tem o seu próprio modelo: pix e débito não aceitam parcelas,
só o cartão de crédito tem tabela de taxas por parcela.
"""
from decimal import Decimal
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

PaymentMethod = Literal["pix", "credit_card", "debit_card"]

MAX_INSTALLMENTS = 12

PAYMENT_METHOD_NAMES: Dict[str, str] = {
    "pix": "PIX",
    "credit_card": "Cartão de Crédito",
    "debit_card": "Cartão de Débito",
}


def payment_method_name(method: str) -> str:
    """Nome em português do método de pagamento (ou a própria chave, se desconhecida)."""
    return PAYMENT_METHOD_NAMES.get(method, method)


class PixConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    enabled: bool = True
    # False: organizador absorve a taxa; True: a taxa é repassada ao participante
    passthrough_fee: bool = False
    custom_fee: Optional[Decimal] = Field(default=None, ge=0, le=1)


class DebitCardConfig(PixConfig):
    pass


class CreditCardConfig(PixConfig):
    max_installments: int = Field(default=1, ge=1, le=MAX_INSTALLMENTS)
    custom_fees: Optional[Dict[int, Decimal]] = None

    @field_validator("custom_fees")
    @classmethod
    def _check_custom_fees(cls, value):
        if value is None:
            return value
        for installments, fee in value.items():
            if not 1 <= installments <= MAX_INSTALLMENTS:
                raise ValueError(f"Número de parcelas inválido na tabela de taxas: {installments}")
            if not Decimal(0) <= fee <= Decimal(1):
                raise ValueError(f"Taxa deve estar entre 0 e 1: {fee}")
        return value


class PaymentMethods(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    pix: Optional[PixConfig] = None
    credit_card: Optional[CreditCardConfig] = None
    debit_card: Optional[DebitCardConfig] = None


class PaymentConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    methods: PaymentMethods
    default_method: Optional[PaymentMethod] = None


class PaymentOption(BaseModel):
    method: PaymentMethod
    installments: Optional[int] = None
    enabled: bool = True
    fee_percentage: Decimal
    base_value: Decimal
    fee_amount: Decimal
    final_value: Decimal
    description: str
    passthrough_fee: bool

    @field_serializer("fee_percentage", "base_value", "fee_amount", "final_value")
    def _money_to_float(self, value: Decimal) -> float:
        return float(value)


class PaymentCalculation(BaseModel):
    base_value: Decimal
    available_methods: List[PaymentOption] = []
    default_method: Optional[PaymentMethod] = None

    @field_serializer("base_value")
    def _money_to_float(self, value: Decimal) -> float:
        return float(value)
