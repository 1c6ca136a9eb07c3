import math

from errors import InvalidVolumeError

# Factor to cubic meters
CBM_FACTORS = {
    # Metric
    'm3': 1, 'm³': 1, 'cbm': 1,
    'cm3': 1e-6, 'cm³': 1e-6,
    'mm3': 1e-9, 'mm³': 1e-9,
    'l': 0.001, 'liter': 0.001, 'litre': 0.001,
    'ml': 0.000001,
    # Imperial / US customary
    'ft3': 0.0283168, 'ft³': 0.0283168,
    'in3': 0.0000163871, 'in³': 0.0000163871,
    'yd3': 0.764555, 'yd³': 0.764555,
    'gal': 0.00378541, 'us gal': 0.00378541,  # US gallon
    'imp gal': 0.00454609,  # UK imperial gallon
    # Weight, at the household-goods density used by the rate sheets
    'kg': 0.01,
    'lb': 0.00434782608, 'lbs': 0.00434782608,
}


def convert_to_cubic_meters(volume, unit):
    factor = CBM_FACTORS.get(str(unit or '').strip().lower())
    if factor is None:
        raise InvalidVolumeError(f"Invalid unit: {unit!r}")
    return float(volume) * factor


def verify_volume(volume, unit):
    """Validated volume in m³, or InvalidVolumeError with a user-facing message."""
    try:
        num = float(volume)
    except (TypeError, ValueError):
        num = None

    if not num and not unit:
        raise InvalidVolumeError("Volume and Unit is required")
    if num is None or num == 0 or not math.isfinite(num):
        raise InvalidVolumeError("Volume is required")
    if not unit:
        raise InvalidVolumeError("Unit is required")
    if num < 0:
        raise InvalidVolumeError("Volume must be a positive number")

    cbm = convert_to_cubic_meters(num, unit)
    if cbm <= 0:
        raise InvalidVolumeError("Converted volume must be a positive number")
    return cbm
