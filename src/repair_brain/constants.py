"""Centralized constants for Repair Brain."""

# Sliding windows
DEFAULT_WINDOW_CAPACITY = 120
MIN_ANALYSIS_SAMPLES = 5
MIN_REGRESSION_POINTS = 3

# Confidence reported when a window is too short to classify
INSUFFICIENT_DATA_CONFIDENCE = 0.1

# Spike detection
SPIKE_SIGMA = 3.0
CRITICAL_SPIKE_SIGMA = 6.0
FLAT_BASELINE_JUMP_RATIO = 0.1

# Repair
DEFAULT_FIX_TIMEOUT_SECONDS = 30.0
DEFAULT_SAMPLE_INTERVAL_SECONDS = 300

# Trend queries against the metric store
DEFAULT_TREND_HOURS = 24
TREND_SLOPE_EPSILON = 0.01

# Listing limits
DEFAULT_PAGE_LIMIT = 50
MAX_PAGE_LIMIT = 1000
