import unittest
from unittest.mock import MagicMock, patch

from sheets_handler import (
    COL_ID,
    COL_STATUS,
    GoogleSheetsHandler,
    LocalRowStore,
    RowConflictError,
    find_row,
    pad_row,
)


def _row(product_id, name="Phone", status="Свободен"):
    return pad_row([product_id, name, "100", "Phones", "", "New", "", "", "", "", "1", status])


class TestGoogleSheetsHandler(unittest.TestCase):
    def setUp(self):
        # Patch the connection so we don't need real creds
        self.patcher = patch('sheets_handler.ServiceAccountCredentials')
        self.MockCreds = self.patcher.start()

        self.patcher_gspread = patch('sheets_handler.gspread')
        self.MockGspread = self.patcher_gspread.start()

        # Patch os.path.exists to simulate creds file existence
        self.patcher_exists = patch('sheets_handler.os.path.exists', return_value=True)
        self.MockExists = self.patcher_exists.start()

        self.handler = GoogleSheetsHandler(sheet_id='dummy_sheet_id', sheet_name='Лист1', header_rows=1)

        # Mock the sheet and worksheet
        self.mock_sheet = MagicMock()
        self.mock_worksheet = MagicMock()
        self.handler.sheet = self.mock_sheet
        self.mock_sheet.worksheet.return_value = self.mock_worksheet

    def tearDown(self):
        self.patcher.stop()
        self.patcher_gspread.stop()
        self.patcher_exists.stop()

    def test_connect_opens_sheet_by_key(self):
        self.handler.client.open_by_key.assert_called_with('dummy_sheet_id')

    def test_missing_creds_file_raises(self):
        self.MockExists.return_value = False
        with self.assertRaises(FileNotFoundError):
            GoogleSheetsHandler(sheet_id='dummy_sheet_id')

    def test_list_rows_skips_header_and_pads(self):
        self.mock_worksheet.get_all_values.return_value = [
            ['ID', 'Название', 'Цена'],
            ['1700000000000', 'Phone', '100'],
            ['1700000000001', 'Case'],
        ]

        rows = self.handler.list_rows()

        self.assertEqual(len(rows), 2)
        self.assertEqual(rows[0][COL_ID], '1700000000000')
        self.assertEqual(len(rows[1]), 15)
        self.assertEqual(rows[1][COL_STATUS], '')
        self.mock_sheet.worksheet.assert_called_with('Лист1')

    def test_list_rows_propagates_errors(self):
        self.mock_worksheet.get_all_values.side_effect = RuntimeError("quota")
        with self.assertRaises(RuntimeError):
            self.handler.list_rows()

    def test_update_row_maps_position_to_sheet_row(self):
        # позиция 0 это первая строка после заголовка, т.е. строка 2
        self.handler.update_row(0, _row('1', status='Резерв'))

        args, kwargs = self.mock_worksheet.update.call_args
        self.assertEqual(kwargs['range_name'], 'A2:O2')
        self.assertEqual(kwargs['values'][0][COL_STATUS], 'Резерв')
        self.assertEqual(kwargs['value_input_option'], 'USER_ENTERED')

    def test_update_row_with_expected_detects_conflict(self):
        self.mock_worksheet.row_values.return_value = _row('1', status='Продан')

        with self.assertRaises(RowConflictError):
            self.handler.update_row(0, _row('1', status='Резерв'), expected=_row('1'))

        self.mock_worksheet.row_values.assert_called_with(2)
        self.mock_worksheet.update.assert_not_called()

    def test_update_row_with_expected_writes_when_unchanged(self):
        self.mock_worksheet.row_values.return_value = ['1', 'Phone', '100', 'Phones', '', 'New', '', '', '', '', '1', 'Свободен']

        self.handler.update_row(0, _row('1', status='Резерв'), expected=_row('1'))

        self.mock_worksheet.update.assert_called_once()

    def test_append_row_writes_after_last_id(self):
        # заголовок + 2 товара → следующая строка 4
        self.mock_worksheet.col_values.return_value = ['ID', '1', '2']

        self.handler.append_row(['3', 'New phone'])

        self.mock_worksheet.col_values.assert_called_with(1)
        args, kwargs = self.mock_worksheet.update.call_args
        self.assertEqual(kwargs['range_name'], 'A4:O4')
        self.assertEqual(kwargs['values'][0][:2], ['3', 'New phone'])

    def test_delete_row_at(self):
        self.handler.delete_row_at(2)
        self.mock_worksheet.delete_rows.assert_called_with(4)

    def test_locate_scans_fresh_rows(self):
        self.mock_worksheet.get_all_values.return_value = [
            ['ID'],
            ['1', 'A'],
            ['2', 'B'],
        ]

        position, row = self.handler.locate('2')
        self.assertEqual(position, 1)
        self.assertEqual(row[1], 'B')

        self.assertEqual(self.handler.locate('404'), (None, None))


class TestLocalRowStore(unittest.TestCase):
    def test_update_and_delete(self):
        store = LocalRowStore([_row('1'), _row('2')])

        store.update_row(1, _row('2', status='Резерв'))
        store.delete_row_at(0)

        rows = store.list_rows()
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0][COL_STATUS], 'Резерв')

    def test_list_rows_returns_copies(self):
        store = LocalRowStore([_row('1')])
        store.list_rows()[0][COL_STATUS] = 'Продан'
        self.assertEqual(store.list_rows()[0][COL_STATUS], 'Свободен')

    def test_conflict(self):
        store = LocalRowStore([_row('1', status='Продан')])
        with self.assertRaises(RowConflictError):
            store.update_row(0, _row('1', status='Резерв'), expected=_row('1'))


class TestFindRow(unittest.TestCase):
    def test_empty_id_never_matches_blank_rows(self):
        rows = [pad_row([]), _row('1')]
        self.assertIsNone(find_row(rows, ''))
        self.assertEqual(find_row(rows, ' 1 '), 1)


if __name__ == '__main__':
    unittest.main()
