"""Reservation admission engine and installment ledger"""
from .installment_service import InstallmentLedger
from .reservation_service import ReservationService

__all__ = ["InstallmentLedger", "ReservationService"]
