"""
Exception hierarchy for the descriptor wallet core.

Every error raised by the compiler, selector, balancer, assembler and PSBT
codec derives from DescCoreError so the command layer can report them
uniformly.
"""

from __future__ import annotations


class DescCoreError(Exception):
    pass


class KeyParseError(DescCoreError):
    pass


class DescriptorError(DescCoreError):
    pass


class CompileError(DescCoreError):
    """Policy is structurally invalid or can never be satisfied."""


class PolicyParseError(CompileError):
    pass


class UnresolvableKeyError(CompileError):
    def __init__(self, identifier: str, reason: str = ""):
        self.identifier = identifier
        message = f"Cannot resolve key '{identifier}'"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class InvalidThresholdError(CompileError):
    def __init__(self, k: int, n: int):
        self.k = k
        self.n = n
        super().__init__(f"Invalid threshold {k} of {n}: need 0 < k <= {n}")


class UnsatisfiablePolicyError(CompileError):
    pass


class DuplicateKeyError(CompileError):
    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Key '{key}' appears more than once in the policy")


class InsufficientFundsError(DescCoreError):
    """Available value cannot cover what is needed."""

    def __init__(self, needed: int, available: int, message: str | None = None):
        self.needed = needed
        self.available = available
        super().__init__(
            message or f"Insufficient funds: need {needed} sats, have {available} sats"
        )


class SelectionError(DescCoreError):
    pass


class SelectionFundsError(SelectionError, InsufficientFundsError):
    pass


class BalanceError(DescCoreError):
    pass


class BalanceFundsError(BalanceError, InsufficientFundsError):
    pass


class AssemblyError(DescCoreError):
    """Descriptor lookup failed for a selected input."""


class PSBTError(DescCoreError):
    pass


class SigningError(DescCoreError):
    pass
