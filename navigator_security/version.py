"""Navigator Security Meta information.
   Navigator Security protects a single client with an encrypted store,
   CSRF tokens, rate limiting, input sanitization and a security event log.
"""
__title__ = 'navigator_security'
__description__ = (
   'Navigator Security: encrypted client storage, CSRF tokens, rate '
   'limiting, input sanitization and security event logging.'
)
__version__ = '0.1.0'
__copyright__ = 'Copyright (c) 2023 Jesus Lara'
__author__ = 'Jesus Lara'
__author_email__ = 'jesuslarag@gmail.com'
__license__ = 'Apache-2.0'
__url__ = 'https://github.com/phenobarbital/navigator-security'
