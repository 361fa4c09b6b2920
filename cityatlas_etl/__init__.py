"""
CityAtlas Analytics ETL

Validation, cleaning, normalization, aggregation and SCD2 dimension loading
for city metrics and user-behaviour events, run from a cron-style batch
scheduler and a Kafka micro-batching consumer.
"""

__version__ = "1.0.0"
