'''
Define variables used across the entire application
'''


STAGNANT_SPEED = 5.0           # km/h, below this a vehicle is not moving
MAX_MONITORED_VEHICLES = 4     # fixed fleet size handled per cycle

LOCAL_ALERT_CAP = 50           # alerts kept by the monitor
SERVER_ALERT_CAP = 100         # alerts kept by the ingestion server
DEFAULT_ALERT_LIMIT = 50       # default page size for alert queries

DISTANCE_HISTORY_DAYS = 30     # daily rollups kept

MONITOR_INITIAL_DELAY_S = 30   # first tick after start
MONITOR_PERIOD_S = 60          # tick period

ROLLUP_HOUR = 23               # local time of the daily distance rollup
ROLLUP_MINUTE = 59

HTTP_TIMEOUT_S = 15.0
