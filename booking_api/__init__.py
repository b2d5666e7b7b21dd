"""
Space Booking API
Reservation admission, pricing and installment ledger for rentable spaces
"""
__version__ = "1.2.0"
