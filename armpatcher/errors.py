from __future__ import annotations


class ArmPatcherError(Exception):
    pass


class ToolchainMissing(ArmPatcherError):
    pass


class AssemblyFailure(ArmPatcherError):
    def __init__(self, output: str, returncode: int | None = None) -> None:
        super().__init__(output)
        self.output = output
        self.returncode = returncode


class ObjectDecodeError(ArmPatcherError):
    pass


class ObjectTooSmall(ObjectDecodeError):
    pass


class UnexpectedOptionalHeader(ObjectDecodeError):
    pass


class MissingSymbolTable(ObjectDecodeError):
    pass


class ObjectOutOfBounds(ObjectDecodeError):
    pass


class ImageDecodeError(ArmPatcherError):
    pass


class AddressTranslationError(ArmPatcherError):
    pass


class CatalogError(ArmPatcherError):
    pass
