# This package assembles the context window for each turn

# +---------------------+     +---------------------+
# |      Memory         |     |     Knowledge       |   (external, embedded)
# |---------------------|     |---------------------|
# | short: ring buffer  |     | indexed documents   |
# | medium: session     |     | attached files      |
# | long: semantic      |     +---------------------+
# +---------------------+
#
# +---------------------+
# |      Session        |   (per user/session, mutated at commit only)
# |---------------------|
# | preferences         |
# | tasks               |
# | recent turns        |
# +---------------------+
#
#    \    /
#     \  /
#      \/
# +------------------------------+
# |       Context window         |   (11 layers, fixed order)
# |------------------------------|
# |  1 Instructions    (kept)    |
# |  2 User Info                 |
# |  3 Knowledge                 |
# |  4 Task/Goal State           |
# |  5 Memory                    |
# |  6 Tools                     |
# |  7 Examples                  |
# |  8 Context                   |
# |  9 Constraints     (kept)    |
# | 10 Output Format             |
# | 11 User Query      (kept)    |
# +------------------------------+
#         |  scored, then fitted to the token budget
#         v
#   [generation backend]
#         |
#         v
#   StateUpdater commits the turn
