"""Pickup location configuration served to requesters scheduling a collection."""

PICKUP_CONFIG = {
    "address": {
        "street": "40A Brancourt Ave",
        "suburb": "Bankstown",
        "state": "NSW",
        "postcode": "2200",
        "country": "Australia",
        "full": "40A Brancourt Ave, Bankstown NSW 2200, Australia",
    },
    "coordinates": {
        "latitude": -33.9137,
        "longitude": 151.0351,
    },
    # Keys follow date.weekday(): monday == 0
    "business_hours": {
        "monday": {"open": "09:00", "close": "17:00"},
        "tuesday": {"open": "09:00", "close": "17:00"},
        "wednesday": {"open": "09:00", "close": "17:00"},
        "thursday": {"open": "09:00", "close": "17:00"},
        "friday": {"open": "09:00", "close": "17:00"},
        "saturday": {"open": "10:00", "close": "14:00"},
        "sunday": {"closed": True},
    },
    "contact": {
        "phone": "+61 2 9000 0000",
        "email": "pickup@cookiecutter.com",
    },
    "instructions": [
        "Please bring photo ID for pickup verification",
        "Call ahead if you're running late",
        "Park in visitor parking spaces",
        "Ring the doorbell at unit 40A",
    ],
}

SLOT_MINUTES = 30
