"""auth/ -- Users, groups, permissions and the login / registration / reset flows.

Layer rule: auth/ imports stdlib, third-party libraries and core/.
auth/service.py is the one module that also uses cache/ and sessions/; every
other module here stays below them. api/ imports from auth/, not the other
way around.
"""
