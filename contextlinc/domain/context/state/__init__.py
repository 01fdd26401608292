# State = everything a turn leaves behind for the next one.

# Written only at commit, after the reply is generated:

# Short-term memory entries for the query and the reply

# Medium/long-term candidates (tier policies decide what is kept)

# Access bookkeeping for the memory items the window surfaced

# Attached documents, indexed for later retrieval

# The turn itself on the session (intent, context switches)

# The assembled window, kept as the session's layer snapshot
