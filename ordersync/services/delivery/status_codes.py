from typing import Dict, Optional

# Numeric delivery status codes reported by the logistics API.
DELIVERY_STATUS_LABELS: Dict[int, str] = {
    4: "CRÉÉ",
    5: "DEMANDE DE RAMASSAGE",
    6: "EN COURS",
    8: "EN ATTENTE DE TRANSIT",
    9: "EN TRANSIT POUR EXPÉDITION",
    10: "EN TRANSIT POUR RETOUR",
    11: "EN ATTENTE",
    12: "EN RUPTURE DE STOCK",
    15: "PRÊT À EXPÉDIER",
    22: "ASSIGNÉ",
    31: "EXPÉDIÉ",
    32: "ALERTÉ",
    41: "LIVRÉ",
    42: "REPORTÉ",
    50: "ANNULÉ",
    51: "PRÊT À RETOURNER",
    52: "PRIS PAR LE MAGASIN",
    53: "NON REÇU",
}

# Orders in these states are no longer polled by the status sync job.
TERMINAL_DELIVERY_CODES = frozenset({41, 50, 52, 53})


def delivery_status_label(code: Optional[int]) -> str:
    if code is None:
        return "INCONNU"
    return DELIVERY_STATUS_LABELS.get(code, f"INCONNU ({code})")
