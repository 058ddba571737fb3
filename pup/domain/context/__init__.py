# This module handles context assembly for responses

# +---------------------+
# |      Memory         |   (Persistent, searchable, expiring)
# |---------------------|
# | Memories + vectors  |
# | User profiles       |
# | Channel vibes       |
# +---------------------+

# +---------------------+
# |      Buffer         |   (Ephemeral, capped, per channel)
# |---------------------|
# | Last 100 messages   |
# | 24h idle expiry     |
# +---------------------+

#    \    /
#     \  /
#      \/
# +------------------------------+
# |           Context            |   (Assembled per inbound message)
# |------------------------------|
# | Recent history (N messages)  |
# | Relevant memories (search)   |
# | Channel vibe (cached)        |
# | Participant profiles (cached)|
# +------------------------------+
#         |
#         v
#   [response generation]
