# /chatflow/utils/metrics.py

from prometheus_client import Counter, Histogram

# All Prometheus metrics used by the service live here.

# Router / Interpreter
router_outcomes_counter = Counter('chatflow_router_outcomes_total', 'Inbound messages by routing outcome', ['outcome'])
nodes_evaluated_counter = Counter('chatflow_nodes_evaluated_total', 'Flow nodes evaluated', ['node_type'])
actions_emitted_counter = Counter('chatflow_actions_emitted_total', 'Actions emitted by the interpreter', ['action_type'])
sessions_finished_counter = Counter('chatflow_sessions_finished_total', 'Sessions that left the active state', ['status'])
engine_faults_counter = Counter('chatflow_engine_faults_total', 'Steps aborted or stalled by the engine', ['reason'])

# External calls made from nodes and the delivery channel
external_calls_counter = Counter('chatflow_external_calls_total', 'External calls', ['target', 'status'])
delivery_counter = Counter('chatflow_deliveries_total', 'Outbound deliveries', ['action_type', 'status'])

# Performance
response_time_histogram = Histogram('chatflow_response_time_seconds', 'Response time in seconds', ['endpoint'])
step_duration_histogram = Histogram('chatflow_step_duration_seconds', 'Time spent routing one inbound message')

# Database
database_operations_counter = Counter('chatflow_database_operations_total', 'Database operations', ['operation', 'status'])
