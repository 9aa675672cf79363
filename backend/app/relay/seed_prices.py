"""Seed prices and GBM parameters for the simulated feed, keyed by exchange token."""

# Starting prices for a few well known NSE tokens
SEED_PRICES: dict[str, float] = {
    "99926000": 22500.00,  # NIFTY 50
    "99926009": 48000.00,  # NIFTY BANK
    "99926037": 21500.00,  # FINNIFTY
    "2885": 2900.00,  # RELIANCE-EQ
    "11536": 3900.00,  # TCS-EQ
    "1333": 1650.00,  # HDFCBANK-EQ
    "1594": 1500.00,  # INFY-EQ
    "4963": 1100.00,  # ICICIBANK-EQ
    "3045": 800.00,  # SBIN-EQ
}

# Index tokens move less than single stocks
INDEX_TOKENS: set[str] = {"99926000", "99926009", "99926037"}

INDEX_PARAMS: dict[str, float] = {"sigma": 0.15, "mu": 0.08}
DEFAULT_PARAMS: dict[str, float] = {"sigma": 0.25, "mu": 0.05}

# Correlation coefficients
INDEX_CORR = 0.8  # Indices move together
DEFAULT_CORR = 0.3  # Everything else
