REDIS_IDENTITY_KEY = "identity:{identity_id}" # identity id - profile hash
REDIS_ROOM_HISTORY_KEY = "messages:room:{room_id}" # room id - list of JSON message records
REDIS_DM_HISTORY_KEY = "messages:dm:{first}:{second}" # sorted identity pair - list of JSON message records

# **Example `identity:{id}` hash fields**
# - `id` = `{identityId}`
# - `display_name` = string shown to other participants
# - `created_at` = ISO timestamp

# **Message record (list element, JSON)**
# - `message_id`, `kind` (private|room), `from_identity`, `from_display_name`
# - `to_identity` (private) or `room_id` (room)
# - `body`, `sent_at` (ISO timestamp), `delivered` (private only)


def dm_history_key(identity_a: str, identity_b: str) -> str:
    first, second = sorted((identity_a, identity_b))
    return REDIS_DM_HISTORY_KEY.format(first=first, second=second)
