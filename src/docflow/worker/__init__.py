"""Background workers consuming the SQL-backed job queues."""
