"""Supported payout banks"""

from typing import Dict

BANK_NAMES: Dict[str, str] = {
    "BCA": "Bank Central Asia",
    "MANDIRI": "Bank Mandiri",
    "BNI": "Bank Negara Indonesia",
    "BRI": "Bank Rakyat Indonesia",
    "CIMB": "Bank CIMB Niaga",
    "PERMATA": "Bank Permata",
    "DANAMON": "Bank Danamon",
    "BNC": "Bank Neo Commerce",
    "MEGA": "Bank Mega",
    "PANIN": "Bank Panin",
    "BTN": "Bank Tabungan Negara",
    "BSI": "Bank Syariah Indonesia",
    "MUAMALAT": "Bank Muamalat",
}


def is_valid_bank_code(code: str) -> bool:
    return code in BANK_NAMES


def get_bank_name(code: str) -> str:
    return BANK_NAMES[code]
