"""Internal libraries for the billing version consumer.

Modules include configuration, the RabbitMQ broker session, the consumption
loop, the on-disk persistence sink, message schemas, logging and metrics.
"""
