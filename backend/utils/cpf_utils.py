"""
Módulo utilitário para validação e normalização de CPF.
Funções puras: não fazem I/O e nunca lançam exceção para entradas str.
"""
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

_ALL_EQUAL = re.compile(r"^([0-9])\1{10}$")
_NON_DIGITS = re.compile(r"[^0-9]")

ERROR_REQUIRED = "CPF é obrigatório"
ERROR_EMPTY = "CPF não pode estar vazio"
ERROR_INCOMPLETE = "CPF incompleto"
ERROR_TOO_LONG = "CPF deve ter exatamente 11 dígitos"
ERROR_ALL_EQUAL = "CPF inválido (todos os dígitos são iguais)"
ERROR_CHECK_DIGITS = "CPF inválido (dígitos verificadores incorretos)"


@dataclass(frozen=True)
class CPFValidationResult:
    is_valid: bool
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"isValid": self.is_valid}
        if self.error is not None:
            data["error"] = self.error
        return data


def _check_digit(digits, count: int) -> int:
    # pesos decrescentes de (count + 1) até 2
    soma = sum(d * (count + 1 - i) for i, d in enumerate(digits[:count]))
    resto = soma % 11
    return 0 if resto < 2 else 11 - resto


class CPFUtils:
    @staticmethod
    def normalize_cpf(cpf: str) -> str:
        """
        Remove caracteres não numéricos do CPF.
        Parâmetros:
            cpf (str): CPF em qualquer formato
        Retorno:
            str: CPF apenas com dígitos
        Exemplo: '111.444.777-35' -> '11144477735'
        """
        return _NON_DIGITS.sub("", cpf or "")

    @staticmethod
    def validate_cpf_digits(cpf: str) -> bool:
        """
        Valida CPF pelo algoritmo dos dígitos verificadores.
        Parâmetros:
            cpf (str): CPF com ou sem formatação
        Retorno:
            bool: True se válido, False caso contrário
        """
        cpf = CPFUtils.normalize_cpf(cpf)
        if len(cpf) != 11 or _ALL_EQUAL.match(cpf):
            return False
        digits = [int(c) for c in cpf]
        if digits[9] != _check_digit(digits, 9):
            return False
        return digits[10] == _check_digit(digits, 10)

    @staticmethod
    def is_valid_cpf(cpf: str) -> CPFValidationResult:
        """
        Valida CPF retornando o motivo da rejeição, pronto para exibir ao usuário.
        Parâmetros:
            cpf (str): CPF com ou sem formatação
        Retorno:
            CPFValidationResult: is_valid e mensagem de erro quando inválido
        """
        if not cpf:
            return CPFValidationResult(False, ERROR_REQUIRED)

        clean = CPFUtils.normalize_cpf(cpf)
        if len(clean) == 0:
            return CPFValidationResult(False, ERROR_EMPTY)
        if len(clean) < 11:
            return CPFValidationResult(False, ERROR_INCOMPLETE)
        if len(clean) > 11:
            return CPFValidationResult(False, ERROR_TOO_LONG)
        if _ALL_EQUAL.match(clean):
            return CPFValidationResult(False, ERROR_ALL_EQUAL)
        if not CPFUtils.validate_cpf_digits(clean):
            return CPFValidationResult(False, ERROR_CHECK_DIGITS)
        return CPFValidationResult(True)

    @staticmethod
    def format_cpf(cpf: str) -> str:
        """Aplica a máscara XXX.XXX.XXX-XX quando o CPF tem 11 dígitos."""
        clean = CPFUtils.normalize_cpf(cpf)
        if len(clean) != 11:
            return clean
        return f"{clean[:3]}.{clean[3:6]}.{clean[6:9]}-{clean[9:]}"

    @staticmethod
    def mask_cpf(cpf: str) -> str:
        """Versão segura para logs: esconde os 3 primeiros e os 2 últimos dígitos."""
        clean = CPFUtils.normalize_cpf(cpf)
        if len(clean) != 11:
            return "***"
        return f"***.{clean[3:6]}.{clean[6:9]}-**"
