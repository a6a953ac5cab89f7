from prometheus_client import Counter, Gauge, Histogram

# One series per processor or operation label.
bulk_actions_submitted = Counter(
    'cxs_bulk_actions_submitted_total', 'Actions accepted by the bulk processor', ['processor'])
bulk_actions_succeeded = Counter(
    'cxs_bulk_actions_succeeded_total', 'Bulk actions acknowledged by the engine', ['processor'])
bulk_actions_failed = Counter(
    'cxs_bulk_actions_failed_total', 'Bulk actions reported as failed', ['processor'])
bulk_batches_in_flight = Gauge(
    'cxs_bulk_batches_in_flight', 'Bulk batches currently being executed', ['processor'])
bulk_batch_latency = Histogram(
    'cxs_bulk_batch_latency_seconds', 'Bulk batch execution time in seconds', ['processor'])

remote_call_latency = Histogram(
    'cxs_remote_call_latency_seconds', 'Search-engine call latency in seconds', ['operation'])
remote_call_errors = Counter(
    'cxs_remote_call_errors_total', 'Search-engine calls that failed', ['operation'])
monthly_indices_created = Counter(
    'cxs_monthly_indices_created_total', 'Monthly indices created by the persistence core')
