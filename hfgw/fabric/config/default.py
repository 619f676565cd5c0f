# Timeouts and delays are in milliseconds.
DEFAULT = {
    'propose-timeout': 30000,
    'order-timeout': 30000,
    'commit-timeout': 60000,
    'grpc-wait-for-ready-timeout': 3000,
    'grpc.max_send_message_length': -1,
    'grpc.max_receive_message_length': -1,

    'connection-retry-count': 3,
    'connection-retry-delay': 500,
    'connection-retry-backoff': 2,
    'connection-retry-max-delay': 5000,
    'connection-idle-timeout': 600000,
    'connection-sweep-interval': 60000,

    'initialize-with-discovery': False,
    'discovery-as-localhost': True,
    'discovery-cache-life': 300000,
    'override-discovery-protocol': None,

    'verify-endorsements': True,

    'ca-request-timeout': 30000,
}
