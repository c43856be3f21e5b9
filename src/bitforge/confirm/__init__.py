from bitforge.confirm.channel import ConfirmationChannel, ConfirmationRequest, Confirmer

__all__ = ["ConfirmationChannel", "ConfirmationRequest", "Confirmer"]
