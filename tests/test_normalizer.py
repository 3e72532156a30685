from review_harvester.normalizer import is_reviews_page, normalize_locator, product_id, same_page

from conftest import page_locator


def test_ref_and_tracking_params_are_ignored():
    a = page_locator(3, ref="cm_cr_arp_d_paging_btm_next")
    b = page_locator(3, ref="cm_cr_getr_d_paging_btm_prev") + "&sortBy=recent"
    assert normalize_locator(a) == normalize_locator(b)
    assert normalize_locator(a) == "https://www.example.com/product-reviews/B000000001?pageNumber=3"


def test_missing_page_number_means_first_page():
    url = "https://www.example.com/product-reviews/B000000001/ref=x?ie=UTF8"
    assert normalize_locator(url).endswith("?pageNumber=1")
    assert same_page(url, page_locator(1))


def test_normalization_is_idempotent():
    once = normalize_locator(page_locator(7))
    assert normalize_locator(once) == once


def test_different_pages_differ():
    assert not same_page(page_locator(2), page_locator(3))


def test_malformed_input_comes_back_unchanged():
    assert normalize_locator("not a url") == "not a url"
    assert normalize_locator("") == ""
    bad_page = "https://www.example.com/product-reviews/B000000001?pageNumber=abc"
    assert normalize_locator(bad_page) == bad_page


def test_same_page_needs_both_sides():
    assert not same_page(None, page_locator(1))
    assert not same_page(page_locator(1), "")


def test_reviews_page_and_product_id():
    assert is_reviews_page(page_locator(1))
    assert not is_reviews_page("https://www.example.com/dp/B000000001")
    assert not is_reviews_page(None)
    assert product_id(page_locator(1)) == "B000000001"
    assert product_id("https://www.example.com/") is None
