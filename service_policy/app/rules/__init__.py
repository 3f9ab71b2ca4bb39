"""
Rules package.

Holds the decision data model and the policy pipeline that turns a
subject, resource, action and context into a PolicyResult. Stages run in
a fixed order and the first decisive one wins.
"""
