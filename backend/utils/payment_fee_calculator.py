"""
Cálculo das opções de pagamento de um evento (PIX, débito e crédito parcelado)
a partir do preço base e da configuração de taxas do evento.
"""
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation, localcontext
from typing import Dict, List, Optional, Union

from backend.utils.payment_config import (
    MAX_INSTALLMENTS,
    CreditCardConfig,
    DebitCardConfig,
    PaymentCalculation,
    PaymentConfig,
    PaymentMethods,
    PaymentOption,
    PixConfig,
)

Price = Union[Decimal, int, float, str]

CENTS = Decimal("0.01")
# dígitos de folga além da parte inteira: centavos, taxa com 4 casas e arredondamento
PRECISION_MARGIN = 12

# Taxas padrão do gateway (fração do valor)
DEFAULT_PIX_FEE = Decimal("0.0099")
DEFAULT_DEBIT_FEE = Decimal("0.0299")
DEFAULT_CREDIT_FEES: Dict[int, Decimal] = {
    n: Decimal("0.0499") + Decimal("0.01") * (n - 1) for n in range(1, MAX_INSTALLMENTS + 1)
}

DEFAULT_PAYMENT_CONFIG = PaymentConfig(
    methods=PaymentMethods(
        pix=PixConfig(enabled=True, passthrough_fee=False),
        credit_card=CreditCardConfig(enabled=True, passthrough_fee=False, max_installments=1),
    ),
    default_method="pix",
)


def _to_decimal(value: Price) -> Optional[Decimal]:
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return result if result.is_finite() else None


def _money(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def _charge(base: Decimal, fee: Decimal, passthrough: bool):
    """(valor da taxa, valor final); sem repasse o valor final é exatamente o preço base."""
    if not passthrough:
        return Decimal(0), base
    return _money(base * fee), _money(base + base * fee)


def _fee_suffix(fee: Decimal) -> str:
    return f" (+ {fee * 100:.2f}% taxa)"


class PaymentFeeCalculator:
    @staticmethod
    def calculate_payment_options(price: Price, config: Optional[PaymentConfig] = None) -> PaymentCalculation:
        """
        Calcula as opções de pagamento disponíveis para um evento.
        Parâmetros:
            price: preço base do evento
            config (PaymentConfig, opcional): configuração do evento; sem ela vale
                DEFAULT_PAYMENT_CONFIG (PIX e crédito à vista, sem repasse de taxa)
        Retorno:
            PaymentCalculation: opções na ordem pix, débito, crédito 1x..Nx
        """
        config = config or DEFAULT_PAYMENT_CONFIG
        base = _to_decimal(price)
        if base is None or base < 0:
            return PaymentCalculation(base_value=Decimal(0), default_method=config.default_method)

        methods = config.methods
        options: List[PaymentOption] = []
        with localcontext() as ctx:
            # precisão suficiente para quantizar em centavos qualquer preço finito
            ctx.prec = max(ctx.prec, base.adjusted() + PRECISION_MARGIN)
            if methods.pix is not None and methods.pix.enabled:
                options.append(PaymentFeeCalculator._pix_option(base, methods.pix))
            if methods.debit_card is not None and methods.debit_card.enabled:
                options.append(PaymentFeeCalculator._debit_option(base, methods.debit_card))
            if methods.credit_card is not None and methods.credit_card.enabled:
                for installments in range(1, methods.credit_card.max_installments + 1):
                    options.append(PaymentFeeCalculator._credit_option(base, methods.credit_card, installments))

        return PaymentCalculation(base_value=base, available_methods=options, default_method=config.default_method)

    @staticmethod
    def _pix_option(base: Decimal, config: PixConfig) -> PaymentOption:
        fee = config.custom_fee if config.custom_fee is not None else DEFAULT_PIX_FEE
        fee_amount, final_value = _charge(base, fee, config.passthrough_fee)
        description = "PIX - Aprovação instantânea"
        if config.passthrough_fee:
            description += _fee_suffix(fee)
        return PaymentOption(
            method="pix",
            fee_percentage=fee,
            base_value=base,
            fee_amount=fee_amount,
            final_value=final_value,
            description=description,
            passthrough_fee=config.passthrough_fee,
        )

    @staticmethod
    def _debit_option(base: Decimal, config: DebitCardConfig) -> PaymentOption:
        fee = config.custom_fee if config.custom_fee is not None else DEFAULT_DEBIT_FEE
        fee_amount, final_value = _charge(base, fee, config.passthrough_fee)
        description = "Cartão de Débito"
        if config.passthrough_fee:
            description += _fee_suffix(fee)
        return PaymentOption(
            method="debit_card",
            fee_percentage=fee,
            base_value=base,
            fee_amount=fee_amount,
            final_value=final_value,
            description=description,
            passthrough_fee=config.passthrough_fee,
        )

    @staticmethod
    def _credit_option(base: Decimal, config: CreditCardConfig, installments: int) -> PaymentOption:
        fee = PaymentFeeCalculator._credit_fee(config, installments)
        fee_amount, final_value = _charge(base, fee, config.passthrough_fee)
        if installments == 1:
            description = "Cartão de Crédito à vista"
        else:
            installment_value = _money(final_value / installments)
            description = f"Cartão de Crédito {installments}x de R$ {installment_value:.2f}"
        if config.passthrough_fee:
            description += _fee_suffix(fee)
        return PaymentOption(
            method="credit_card",
            installments=installments,
            fee_percentage=fee,
            base_value=base,
            fee_amount=fee_amount,
            final_value=final_value,
            description=description,
            passthrough_fee=config.passthrough_fee,
        )

    @staticmethod
    def _credit_fee(config: CreditCardConfig, installments: int) -> Decimal:
        # tabela do evento > taxa única do evento > tabela padrão > taxa de 12x
        if config.custom_fees and installments in config.custom_fees:
            return config.custom_fees[installments]
        if config.custom_fee is not None:
            return config.custom_fee
        return DEFAULT_CREDIT_FEES.get(installments, DEFAULT_CREDIT_FEES[MAX_INSTALLMENTS])

    @staticmethod
    def get_default_fee(method: str, installments: Optional[int] = None) -> Decimal:
        """Taxa padrão do gateway para o método (crédito sem parcelas válidas = à vista)."""
        if method == "pix":
            return DEFAULT_PIX_FEE
        if method == "debit_card":
            return DEFAULT_DEBIT_FEE
        if installments is not None and installments in DEFAULT_CREDIT_FEES:
            return DEFAULT_CREDIT_FEES[installments]
        return DEFAULT_CREDIT_FEES[1]

    @staticmethod
    def validate_payment_option(
        method: str,
        installments: Optional[int] = None,
        config: Optional[PaymentConfig] = None,
    ) -> bool:
        """
        Verifica se o método (e o número de parcelas, no crédito) é aceito pelo evento.
        Parâmetros:
            method (str): pix, credit_card ou debit_card
            installments (int, opcional): parcelas; ausente vale 1
            config (PaymentConfig, opcional): configuração do evento
        Retorno:
            bool: True se a combinação é aceita
        """
        methods = (config or DEFAULT_PAYMENT_CONFIG).methods
        if method == "pix":
            return methods.pix is not None and methods.pix.enabled
        if method == "debit_card":
            return methods.debit_card is not None and methods.debit_card.enabled
        if method == "credit_card":
            credit = methods.credit_card
            if credit is None or not credit.enabled:
                return False
            count = 1 if installments is None else installments
            return 1 <= count <= credit.max_installments
        return False

    @staticmethod
    def find_payment_option(
        price: Price,
        method: str,
        installments: Optional[int] = None,
        config: Optional[PaymentConfig] = None,
    ) -> Optional[PaymentOption]:
        """Opção calculada para a combinação pedida, ou None se o evento não a aceita."""
        if not PaymentFeeCalculator.validate_payment_option(method, installments, config):
            return None
        wanted = (installments or 1) if method == "credit_card" else None
        for option in PaymentFeeCalculator.calculate_payment_options(price, config).available_methods:
            if option.method == method and option.installments == wanted:
                return option
        return None
