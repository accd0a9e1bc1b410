"""
Tests for Logger Module

Tests cover:
- SensitiveDataFilter (masking sensitive data)
- StructuredFormatter (JSON and text formatting)
- setup_logger (logger configuration)
- Crypto / database / security event logging helpers
"""

import json
import logging
from unittest.mock import MagicMock


class TestSensitiveDataFilter:
    """Test SensitiveDataFilter for masking sensitive information"""

    def test_filter_masks_session_id(self):
        """Test that session identifiers are masked"""
        from loginguard.common.logger import SensitiveDataFilter

        filter_instance = SensitiveDataFilter()

        logger = logging.getLogger('test')
        record = logger.makeRecord(
            logger.name, logging.INFO, '', 0, '{"session_id": "abc123", "record_id": 4}', (), None
        )

        filter_instance.filter(record)

        assert 'abc123' not in record.msg
        assert json.loads(record.msg)["record_id"] == 4

    def test_filter_masks_nested_token(self):
        """Test that nested token fields are masked"""
        from loginguard.common.logger import SensitiveDataFilter

        filter_instance = SensitiveDataFilter()

        logger = logging.getLogger('test')
        record = logger.makeRecord(
            logger.name, logging.INFO, '', 0, '{"details": [{"Token": "xyz"}]}', (), None
        )

        filter_instance.filter(record)

        assert json.loads(record.msg) == {"details": [{"Token": "***MASKED***"}]}

    def test_filter_preserves_plain_text(self):
        """Test that non-JSON messages are left untouched"""
        from loginguard.common.logger import SensitiveDataFilter

        filter_instance = SensitiveDataFilter()

        logger = logging.getLogger('test')
        record = logger.makeRecord(
            logger.name, logging.INFO, '', 0, 'Crypto AUTHENTICATE: ES256 - SUCCESS', (), None
        )

        assert filter_instance.filter(record) is True
        assert record.msg == 'Crypto AUTHENTICATE: ES256 - SUCCESS'


class TestStructuredFormatter:
    """Test StructuredFormatter output"""

    def test_text_format(self):
        """Test human readable format"""
        from loginguard.common.logger import StructuredFormatter

        formatter = StructuredFormatter(json_format=False)
        logger = logging.getLogger('test_text')
        record = logger.makeRecord(logger.name, logging.WARNING, '', 0, 'hello', (), None)

        output = formatter.format(record)

        assert 'WARNING' in output
        assert 'hello' in output

    def test_json_format_with_extra_fields(self):
        """Test JSON format includes service and record fields"""
        from loginguard.common.logger import StructuredFormatter

        formatter = StructuredFormatter(json_format=True)
        logger = logging.getLogger('test_json')
        record = logger.makeRecord(logger.name, logging.INFO, '', 0, 'validated', (), None)
        record.service_name = 'u2f'
        record.record_id = 12

        data = json.loads(formatter.format(record))

        assert data['level'] == 'INFO'
        assert data['message'] == 'validated'
        assert data['service'] == 'u2f'
        assert data['record_id'] == 12


class TestLoggerSetup:
    """Test setup_logger function"""

    def test_setup_logger_default(self):
        """Test basic logger setup"""
        from loginguard.common.logger import setup_logger

        logger = setup_logger('lg_test_logger_1', level='INFO')

        assert logger.name == 'lg_test_logger_1'
        assert logger.level == logging.INFO
        assert len(logger.handlers) == 1
        assert logger.propagate is False

    def test_setup_logger_is_idempotent(self):
        """Test that repeated setup does not add handlers"""
        from loginguard.common.logger import setup_logger

        first = setup_logger('lg_test_logger_2', level='DEBUG')
        second = setup_logger('lg_test_logger_2', level='ERROR')

        assert first is second
        assert len(second.handlers) == 1
        assert second.level == logging.DEBUG

    def test_setup_logger_with_service_name(self):
        """Test logger with service name"""
        from loginguard.common.logger import get_logger

        logger = get_logger('lg_test_logger_3', service_name='u2f')

        assert logger.service_name == 'u2f'

    def test_setup_logger_invalid_level(self):
        """Test logger with invalid log level"""
        from loginguard.common.logger import setup_logger

        logger = setup_logger('lg_test_logger_4', level='INVALID')

        assert logger.level == logging.INFO

    def test_log_level_from_environment(self, monkeypatch):
        """Test LOG_LEVEL environment variable"""
        from loginguard.common.logger import setup_logger

        monkeypatch.setenv('LOG_LEVEL', 'warning')
        logger = setup_logger('lg_test_logger_5')

        assert logger.level == logging.WARNING


class TestHelpers:
    """Test logging helper functions"""

    def test_log_crypto_operation(self):
        """Test crypto operation message"""
        from loginguard.common.logger import log_crypto_operation

        logger = MagicMock()
        log_crypto_operation(logger, 'authenticate', 'ES256', key_id='vF0Kk2cY', success=False)

        logger.info.assert_called_once_with('Crypto AUTHENTICATE: ES256 (key: vF0Kk2cY) - FAILED')

    def test_log_database_operation(self):
        """Test database operation message"""
        from loginguard.common.logger import log_database_operation

        logger = MagicMock()
        log_database_operation(logger, 'UPDATE', 'loginguard_tfa', record_id=3)

        logger.debug.assert_called_once_with('DB UPDATE: loginguard_tfa [id: 3]')

    def test_log_security_event_failure_is_warning(self):
        """Test failed security events are logged at WARNING"""
        from loginguard.common.logger import log_security_event

        logger = MagicMock()
        logger.isEnabledFor.return_value = False
        log_security_event(logger, 'u2f_counter_replay', user_id='user-1', success=False, details={"record_id": 1})

        logger.log.assert_called_once_with(logging.WARNING, 'SECURITY u2f_counter_replay user=user-1 - FAILED')
        logger.debug.assert_not_called()

    def test_log_security_event_details_at_debug(self):
        """Test event details are emitted as JSON at DEBUG"""
        from loginguard.common.logger import log_security_event

        logger = MagicMock()
        logger.isEnabledFor.return_value = True
        log_security_event(logger, 'u2f_validate', user_id='user-1', success=True, details={"record_id": 1})

        logger.log.assert_called_once_with(logging.INFO, 'SECURITY u2f_validate user=user-1 - SUCCESS')
        payload = json.loads(logger.debug.call_args[0][0])
        assert payload["details"] == {"record_id": 1}
