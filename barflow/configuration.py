# Package-wide constants.
#
#     - Market timezone and session close: end-of-day flattening and the daily risk budget are bucketed
#     on the US/Eastern calendar, with daylight saving handled by the timezone database.
#
#     - Numeric floors: R-multiples and bps computations divide by a floor instead of raising on a zero
#     denominator.
#
#     - Bar duration estimate: the engine infers a nominal bar length from the data (median delta),
#     clamped to a sane intraday range.


import datetime


MARKET_TIMEZONE        = 'America/New_York'
SESSION_CLOSE_TIME     = datetime.time(16, 0)  # US/Eastern
R_FLOOR                = 1e-8
DIV_FLOOR              = 1e-12
MS_PER_MINUTE          = 60_000
DEFAULT_BAR_MS         = 5 * MS_PER_MINUTE
MIN_BAR_MS             = 1 * MS_PER_MINUTE
MAX_BAR_MS             = 60 * MS_PER_MINUTE
BAR_MS_MIN_SAMPLES     = 50
BAR_MS_MAX_SAMPLES     = 500
DEFAULT_WARMUP_BARS    = 200
DEFAULT_EXPIRY_BARS    = 5
