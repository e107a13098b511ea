"""
Canopy Controller Services

Leaf-first service layout:
1. rates - Time-of-use tariff lookup
2. baseline - Comparable-day energy baseline
3. safety - Crop-safety gate for load actions
4. scheduling - Load-shedding requests, control loop, cost optimizer
5. demand_response - Grid event allocation
6. verification - Billing-grade savings reports
7. reporting - Recommendations and energy analytics

Collaborators: actuation (device commands), alerts, sensors.
"""

__version__ = "1.0.0"
