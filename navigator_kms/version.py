"""Navigator KMS Meta information.
   Navigator KMS protects application secrets with envelope encryption
   and manages the data keys that protect them.
"""
__title__ = 'navigator_kms'
__description__ = (
   'Navigator KMS: envelope-encrypted secrets, data-key rotation '
   'and a cached, auditable secret access layer.'
)
__version__ = '0.1.0'
__copyright__ = 'Copyright (c) 2023 Jesus Lara'
__author__ = 'Jesus Lara'
__author_email__ = 'jesuslarag@gmail.com'
__license__ = 'Apache-2.0'
__url__ = 'https://github.com/phenobarbital/navigator-kms'
