"""
Asynchronous job execution over RabbitMQ.

This package provides the durable job queue every long-running operation
(marketplace sync, product batches, AI scans) runs on:
- Broker connection with bounded exponential-backoff reconnects
- Fixed, idempotently declared exchange/queue/dead-letter topology
- Job, JobHistory and QueueHealth records in the SQL store
- Publisher, consumer registry and stats reporter behind JobQueueService
"""
