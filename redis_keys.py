REDIS_CONN_KEY = "conn:{connection_id}" # connection id - session hash
REDIS_CONN_CHANNEL = "conn:channel:{connection_id}" # connection id - pub/sub mailbox channel
REDIS_ONLINE_KEY = "conn:online" # set of connection IDs with a live session
REDIS_POOL_KEY = "pool:{category}" # category - sorted set of waiting connection IDs
REDIS_POOL_SEQ_KEY = "pool:seq:{category}" # category - counter used as the FIFO score
REDIS_POOL_LOCK_KEY = "pool:lock:{category}" # category - lock held while pairing
REDIS_ROOM_USERS_KEY = "room:users:{room_id}" # room id - set of member connection IDs

# **Example `conn:{id}` hash fields**
# - `connection_id` = `{connId}`
# - `connected_at` = ISO timestamp
# - `category` = chat category, absent while idle
# - `room` = room id, absent unless paired
